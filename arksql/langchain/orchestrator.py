"""SQL synthesis: turn a question into a candidate query.

All variants implement ``synthesize(question, caller, ...)`` and return a
``CandidateQuery``. Execution and repair happen downstream; nothing here
touches user data except catalog reads.
"""
import datetime
import logging
from typing import Dict, List, Optional, Sequence, Tuple

import openai
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from langchain_core.prompts import ChatPromptTemplate, MessagesPlaceholder
from pydantic import BaseModel

from arksql.core.config import settings
from arksql.core.errors import IntrospectionError, SynthesisError
from arksql.db.connection import ConnectionFactory, get_async_db_connection
from arksql.db.introspection import SchemaIntrospector, format_schema
from arksql.langchain.validation import SchemaVerification, check_query_rules, verify_schema
from arksql.policy.access import AccessPolicy, CallerContext
from arksql.prompt_references import determine_query_types, get_reference_section
from arksql.prompts import SQL_FEEDBACK_PROMPT, SQL_SYSTEM_PROMPT, role_restrictions
from arksql.schemas.query import CandidateQuery
from arksql.schemas.schema import ForeignKeyConstraint, SchemaTable
from arksql.utils import extract_sql_blocks

logger = logging.getLogger(__name__)

NO_SQL_FEEDBACK = "The model response did not contain a ```sql block."


class Capabilities(BaseModel):
    """Which synthesis features a variant uses."""
    retrieval: bool = False
    multi_agent_critique: bool = False


MODE_CAPABILITIES: Dict[str, Capabilities] = {
    "single_pass": Capabilities(),
    "multi_agent": Capabilities(multi_agent_critique=True),
    "retrieval_augmented": Capabilities(retrieval=True),
}


def history_to_messages(history: Optional[List[Dict]]) -> List[BaseMessage]:
    messages: List[BaseMessage] = []
    for item in history or []:
        if isinstance(item, dict) and item.get("role") == "user":
            messages.append(HumanMessage(content=item.get("content", "")))
        elif isinstance(item, dict) and item.get("role") == "assistant":
            messages.append(AIMessage(content=item.get("content", "")))
    return messages


class SynthesisOrchestrator:
    """Base class holding what every variant needs: the model, the policy and catalog access."""

    mode: str = "single_pass"
    capabilities: Capabilities = MODE_CAPABILITIES["single_pass"]

    def __init__(
        self,
        llm: BaseChatModel,
        policy: AccessPolicy,
        connection_factory: ConnectionFactory = get_async_db_connection,
        feedback_rounds: int = settings.SYNTHESIS_FEEDBACK_ROUNDS,
    ):
        self.llm = llm
        self.policy = policy
        self.connection_factory = connection_factory
        self.feedback_rounds = feedback_rounds

    async def synthesize(
        self,
        question: str,
        caller: CallerContext,
        connection_string: Optional[str] = None,
        history: Optional[List[Dict]] = None,
    ) -> CandidateQuery:
        raise NotImplementedError

    # --- Shared helpers --- #
    def introspector_for(self, connection_string: Optional[str], caller: CallerContext) -> SchemaIntrospector:
        return SchemaIntrospector(
            connection_string or settings.TARGET_DATABASE_URL,
            self.policy.protected_tables,
            connection_factory=self.connection_factory,
            tenant_id=caller.tenant_id,
        )

    async def load_schema(self, introspector: SchemaIntrospector) -> Tuple[List[SchemaTable], List[ForeignKeyConstraint]]:
        """Live catalog snapshot. An unreachable catalog yields an empty schema, not an error."""
        try:
            tables = await introspector.list_tables()
            foreign_keys = await introspector.list_foreign_keys()
            return tables, foreign_keys
        except IntrospectionError as e:
            logger.warning(f"[Synthesis] Schema introspection failed, continuing without a schema: {e}")
            return [], []

    @staticmethod
    def prompt_variables(question: str, caller: CallerContext, schema_context: str) -> Dict[str, str]:
        return {
            "current_date": datetime.date.today().isoformat(),
            "role_restrictions": role_restrictions(caller),
            "reference_section": get_reference_section(determine_query_types(question)),
            "schema_context": schema_context or "Schema unavailable.",
        }

    async def render_messages(
        self,
        system_prompt: str,
        question: str,
        caller: CallerContext,
        schema_context: str,
        history: Optional[List[Dict]] = None,
    ) -> List[BaseMessage]:
        prompt = ChatPromptTemplate.from_messages(
            [
                ("system", system_prompt),
                MessagesPlaceholder(variable_name="history"),
                ("human", "{question}"),
            ]
        ).partial(**self.prompt_variables(question, caller, schema_context))
        value = await prompt.ainvoke({"history": history_to_messages(history), "question": question})
        return value.to_messages()

    async def invoke_llm(self, messages: Sequence[BaseMessage], llm: Optional[BaseChatModel] = None) -> str:
        try:
            response = await (llm or self.llm).ainvoke(list(messages))
        except (openai.APIConnectionError, openai.APITimeoutError, openai.RateLimitError, openai.APIStatusError) as e:
            logger.error(f"[Synthesis] Language model call failed: {e}")
            raise SynthesisError(f"The language model is unavailable: {e}") from e
        content = response.content
        return content if isinstance(content, str) else str(content)

    def check(self, sql: str, caller: CallerContext, tables: Sequence[SchemaTable]):
        validation = check_query_rules(sql, caller, tables or None, self.policy)
        verification = verify_schema(sql, tables) if tables else SchemaVerification()
        return validation, verification

    async def finalize(
        self,
        messages: List[BaseMessage],
        response_text: str,
        caller: CallerContext,
        tables: Sequence[SchemaTable],
    ) -> CandidateQuery:
        """Extract the SQL block and run post-hoc checks, feeding issues back at most ``feedback_rounds`` times."""
        blocks = extract_sql_blocks(response_text)
        if not blocks:
            logger.warning(f"[Synthesis] No SQL block in model response: {response_text[:200]}...")
            return CandidateQuery(is_valid=False, feedback=NO_SQL_FEEDBACK, constructed_query=response_text, mode=self.mode)
        if len(blocks) > 1:
            logger.warning(f"[Synthesis] Model returned {len(blocks)} SQL blocks; using the first.")

        constructed = blocks[0]
        sql = constructed
        feedback = response_text
        validation, verification = self.check(sql, caller, tables)
        rounds = 0
        while not (validation.is_valid and verification.ok) and rounds < self.feedback_rounds:
            rounds += 1
            issues = "\n".join(f"- {line}" for line in validation.errors + verification.issues + verification.alternatives)
            logger.info(f"[Synthesis] Feedback round {rounds}/{self.feedback_rounds} with {len(validation.errors) + len(verification.issues)} issues.")
            messages = messages + [AIMessage(content=feedback), HumanMessage(content=SQL_FEEDBACK_PROMPT.format(issues=issues))]
            revised_text = await self.invoke_llm(messages)
            revised = extract_sql_blocks(revised_text)
            if not revised:
                logger.warning("[Synthesis] Feedback round produced no SQL block; keeping the previous query.")
                break
            sql, feedback = revised[0], revised_text
            validation, verification = self.check(sql, caller, tables)

        return CandidateQuery(
            sql=sql,
            is_valid=validation.is_valid and verification.ok,
            feedback=feedback,
            constructed_query=constructed,
            mode=self.mode,
            rule_violations=validation.errors,
            schema_issues=verification.issues,
            alternative_suggestions=verification.alternatives,
        )


class SinglePassOrchestrator(SynthesisOrchestrator):
    """One model call over the full (or supplied) schema description."""

    async def synthesize(
        self,
        question: str,
        caller: CallerContext,
        connection_string: Optional[str] = None,
        history: Optional[List[Dict]] = None,
        schema_context: Optional[str] = None,
    ) -> CandidateQuery:
        logger.info(f"[SinglePass] [Tenant: {caller.tenant_id}] Synthesizing SQL for: '{question[:100]}'")
        tables, foreign_keys = await self.load_schema(self.introspector_for(connection_string, caller))
        context = schema_context or format_schema(tables, foreign_keys)
        messages = await self.render_messages(SQL_SYSTEM_PROMPT, question, caller, context, history)
        response_text = await self.invoke_llm(messages)
        candidate = await self.finalize(messages, response_text, caller, tables)
        logger.info(f"[SinglePass] Candidate is_valid={candidate.is_valid}.")
        return candidate
