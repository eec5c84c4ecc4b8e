import asyncio
import json
import logging
from typing import Dict, List, Optional

from aiolimiter import AsyncLimiter
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_core.prompts import ChatPromptTemplate

from arksql.core.config import settings
from arksql.core.errors import IntrospectionError
from arksql.db.connection import ConnectionFactory, get_async_db_connection
from arksql.db.introspection import format_schema
from arksql.langchain.orchestrator import MODE_CAPABILITIES, NO_SQL_FEEDBACK, SynthesisOrchestrator
from arksql.langchain.validation import SchemaVerification, verify_schema
from arksql.policy.access import AccessPolicy, CallerContext
from arksql.prompts import (
    NULL_HANDLER_PROMPT,
    PRIMARY_TABLES_PROMPT,
    QUERY_CONSTRUCTOR_PROMPT,
    QUERY_GENERATION_PROMPT,
    QUERY_RULES_PROMPT,
    SCHEMA_VERIFICATION_PROMPT,
    SCORE_CALCULATION_PROMPT,
    role_restrictions,
)
from arksql.schemas.query import CandidateQuery, CritiqueResult
from arksql.utils import extract_sql, fence_sql, json_default

logger = logging.getLogger(__name__)

# area -> (system prompt, feedback heading)
CRITIQUE_AGENTS: Dict[str, tuple] = {
    "null handling": (NULL_HANDLER_PROMPT, "NULL Handling Feedback"),
    "primary tables": (PRIMARY_TABLES_PROMPT, "Primary Tables Feedback"),
    "score calculation": (SCORE_CALCULATION_PROMPT, "Score Calculation Feedback"),
    "query rules": (QUERY_RULES_PROMPT, "Query Rules Feedback"),
    "schema verification": (SCHEMA_VERIFICATION_PROMPT, "Schema Verification Feedback"),
}


def _bullet_lines(text: str) -> List[str]:
    return [line.strip()[1:].strip() for line in text.splitlines() if line.strip().startswith(("-", "*"))]


def merge_feedback(constructed_query: str, critiques: List[CritiqueResult]) -> str:
    """Feedback of every critique under its heading, followed by the queries each one proposed."""
    sections: List[str] = []
    for critique in critiques:
        heading = CRITIQUE_AGENTS[critique.agent][1]
        sections.append(f"**{heading}:**\n{critique.feedback.strip()}")
    sources = [f"- Query Constructor:\n{fence_sql(constructed_query)}"]
    for critique in critiques:
        if critique.constructed_query and not critique.degraded:
            sources.append(f"- {critique.agent.title()}:\n{fence_sql(critique.constructed_query)}")
    sections.append("**Source Queries:**\n" + "\n".join(sources))
    return "\n\n".join(sections)


class MultiAgentCritiqueOrchestrator(SynthesisOrchestrator):
    """Constructor, five concurrent reviewers, then a generator that merges their fixes.

    Every reviewer runs in its own task with its own timeout and error
    boundary, so one slow or failing reviewer degrades to a placeholder
    instead of failing the request.
    """

    mode = "multi_agent"
    capabilities = MODE_CAPABILITIES["multi_agent"]

    def __init__(
        self,
        llm: BaseChatModel,
        policy: AccessPolicy,
        connection_factory: ConnectionFactory = get_async_db_connection,
        feedback_rounds: int = settings.SYNTHESIS_FEEDBACK_ROUNDS,
        critique_timeout: float = settings.CRITIQUE_TIMEOUT_SECONDS,
        limiter: Optional[AsyncLimiter] = None,
    ):
        super().__init__(llm, policy, connection_factory, feedback_rounds)
        self.critique_timeout = critique_timeout
        self.limiter = limiter or AsyncLimiter(settings.LLM_CRITIQUE_MAX_RATE, settings.LLM_CRITIQUE_TIME_PERIOD)

    async def synthesize(
        self,
        question: str,
        caller: CallerContext,
        connection_string: Optional[str] = None,
        history: Optional[List[Dict]] = None,
    ) -> CandidateQuery:
        log_prefix = f"[MultiAgent] [Tenant: {caller.tenant_id}] "
        logger.info(f"{log_prefix}Synthesizing SQL for: '{question[:100]}'")
        introspector = self.introspector_for(connection_string, caller)
        tables, foreign_keys = await self.load_schema(introspector)
        schema_context = format_schema(tables, foreign_keys)

        # 1. Query Constructor
        constructor_messages = await self.render_messages(QUERY_CONSTRUCTOR_PROMPT, question, caller, schema_context, history)
        constructor_text = await self.invoke_llm(constructor_messages)
        constructed = extract_sql(constructor_text)
        if not constructed:
            logger.warning(f"{log_prefix}Query Constructor returned no SQL block.")
            return CandidateQuery(is_valid=False, feedback=NO_SQL_FEEDBACK, constructed_query=constructor_text, mode=self.mode)

        # 2. Reviewers, concurrently
        verification = verify_schema(constructed, tables) if tables else SchemaVerification()
        critiques = await self.run_critiques(question, caller, constructed, schema_context, verification)

        # 3. Final Query Generation
        feedback_summary = merge_feedback(constructed, critiques)
        prompt = ChatPromptTemplate.from_messages([("system", QUERY_GENERATION_PROMPT), ("human", "{question}")])
        value = await prompt.ainvoke({
            "question": question,
            "feedback_summary": feedback_summary,
            "role_restrictions": role_restrictions(caller),
        })
        generation_messages = value.to_messages()
        generation_text = await self.invoke_llm(generation_messages)
        candidate = await self.finalize(generation_messages, generation_text, caller, tables)

        source_queries = {"query constructor": constructed}
        source_queries.update({c.agent: c.constructed_query for c in critiques if not c.degraded})
        schema_issues = list(dict.fromkeys(candidate.schema_issues + [i for c in critiques for i in c.schema_issues]))
        alternatives = list(dict.fromkeys(candidate.alternative_suggestions + [a for c in critiques for a in c.alternative_suggestions]))
        candidate = candidate.model_copy(update={
            "constructed_query": constructed,
            "source_queries": source_queries,
            "schema_issues": schema_issues,
            "alternative_suggestions": alternatives,
        })

        # 4. Plan of the final statement
        if candidate.sql:
            candidate = candidate.model_copy(update={"optimization_notes": await self.explain_notes(introspector, candidate)})
        logger.info(f"{log_prefix}Candidate is_valid={candidate.is_valid}, degraded reviewers: {[c.agent for c in critiques if c.degraded]}")
        return candidate

    async def run_critiques(
        self,
        question: str,
        caller: CallerContext,
        constructed: str,
        schema_context: str,
        verification: SchemaVerification,
    ) -> List[CritiqueResult]:
        return list(await asyncio.gather(*(
            self.guarded_critique(area, question, caller, constructed, schema_context, verification)
            for area in CRITIQUE_AGENTS
        )))

    async def guarded_critique(
        self,
        area: str,
        question: str,
        caller: CallerContext,
        constructed: str,
        schema_context: str,
        verification: SchemaVerification,
    ) -> CritiqueResult:
        """One reviewer under its own timeout. Failures become a degraded result; cancellation propagates."""
        try:
            return await asyncio.wait_for(
                self.critique(area, question, caller, constructed, schema_context, verification),
                timeout=self.critique_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[MultiAgent] {area} review timed out after {self.critique_timeout}s.")
            return self.degraded(area, constructed, f"timed out after {self.critique_timeout} seconds", verification)
        except Exception as e:
            logger.error(f"[MultiAgent] {area} review failed: {e}", exc_info=True)
            return self.degraded(area, constructed, str(e), verification)

    @staticmethod
    def degraded(area: str, constructed: str, message: str, verification: SchemaVerification) -> CritiqueResult:
        is_schema = area == "schema verification"
        return CritiqueResult(
            agent=area,
            constructed_query=constructed,
            feedback=f"Error in {area} analysis: {message}",
            degraded=True,
            schema_issues=verification.issues if is_schema else [],
            alternative_suggestions=verification.alternatives if is_schema else [],
        )

    async def critique(
        self,
        area: str,
        question: str,
        caller: CallerContext,
        constructed: str,
        schema_context: str,
        verification: SchemaVerification,
    ) -> CritiqueResult:
        system_prompt = CRITIQUE_AGENTS[area][0].format(
            role_restrictions=role_restrictions(caller),
            schema_context=schema_context or "Schema unavailable.",
            schema_findings=verification.render(),
        )
        messages: List[BaseMessage] = [
            SystemMessage(content=system_prompt),
            HumanMessage(content=f"Question: {question}\n\nQuery to review:\n{fence_sql(constructed)}"),
        ]
        async with self.limiter:
            text = await self.invoke_llm(messages)
        is_schema = area == "schema verification"
        return CritiqueResult(
            agent=area,
            constructed_query=extract_sql(text) or constructed,
            feedback=text,
            suggestions=_bullet_lines(text),
            schema_issues=verification.issues if is_schema else [],
            alternative_suggestions=verification.alternatives if is_schema else [],
        )

    @staticmethod
    async def explain_notes(introspector, candidate: CandidateQuery) -> str:
        try:
            plan = await introspector.explain(candidate.sql)
        except IntrospectionError as e:
            logger.warning(f"[MultiAgent] EXPLAIN of the final query failed: {e}")
            return f"Query Explanation unavailable: {e}\n\n{candidate.feedback}"
        return f"Query Explanation:\n{json.dumps(plan, indent=2, default=json_default)}\n\n{candidate.feedback}"
