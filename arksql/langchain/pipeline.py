import logging
from typing import Dict, List, Optional

import openai
from langchain_core.language_models import BaseChatModel
from langchain_core.prompts import ChatPromptTemplate
from pydantic import BaseModel

from arksql.core.errors import GatewayConnectionError, SynthesisError
from arksql.langchain.orchestrator import SynthesisOrchestrator
from arksql.langchain.repair import SQLRepairLoop
from arksql.policy.access import CallerContext
from arksql.prompts import CHAT_NAME_SYSTEM_PROMPT
from arksql.schemas.query import CandidateQuery, ExecutionStatus, RepairOutcome, RepairState
from arksql.utils import fence_sql, replace_sql

logger = logging.getLogger(__name__)

NO_QUERY_MESSAGE = "I wasn't able to write a SQL query for that question. Could you rephrase it or add more detail?"
MODEL_UNAVAILABLE_MESSAGE = "The assistant is temporarily unavailable. Please try again in a moment."
CORRECTED_CAVEAT = "Note: the first version of this query failed and was corrected automatically."
POLICY_REFUSAL = "I can't run this query because it is not limited to the data you have access to."


class ChatAnswer(BaseModel):
    """What a chat turn produced. ``text`` is what the user sees."""
    text: str
    sql: Optional[str] = None
    candidate: Optional[CandidateQuery] = None
    outcome: Optional[RepairOutcome] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is not None and self.outcome.state == RepairState.SUCCESS


def render_answer(candidate: CandidateQuery, outcome: RepairOutcome) -> str:
    """SQL + result, SQL + caveat, or a plain refusal."""
    if outcome.state == RepairState.REJECTED:
        result = outcome.result
        if result is not None and result.status == ExecutionStatus.POLICY_VIOLATION:
            return f"{POLICY_REFUSAL} {result.message}"
        return outcome.error or (result.message if result else "") or "This action is not allowed."

    explanation = candidate.feedback or ""
    body = replace_sql(explanation, outcome.sql) if explanation else fence_sql(outcome.sql)
    if outcome.state == RepairState.SUCCESS and outcome.result is not None:
        parts = [body]
        if outcome.corrected:
            parts.append(CORRECTED_CAVEAT)
        parts.append(f"**Result:**\n```json\n{outcome.result.to_wire()}\n```")
        return "\n\n".join(parts)
    return (
        f"{body}\n\nThis query could not be executed successfully after {outcome.executions} attempt(s). "
        f"Last error: {outcome.error}"
    )


async def process_chat_message(
    question: str,
    caller: CallerContext,
    connection_string: str,
    orchestrator: SynthesisOrchestrator,
    repair_loop: SQLRepairLoop,
    history: Optional[List[Dict]] = None,
) -> ChatAnswer:
    """Synthesize, then execute with repair. Always returns something presentable."""
    log_prefix = f"[Chat] [Tenant: {caller.tenant_id}] [Role: {caller.role.value}] "
    logger.info(f"{log_prefix}Processing question: '{question[:100]}'")

    try:
        candidate = await orchestrator.synthesize(question, caller, connection_string, history)
    except SynthesisError as e:
        logger.error(f"{log_prefix}Synthesis failed: {e}")
        return ChatAnswer(text=MODEL_UNAVAILABLE_MESSAGE)

    if not candidate.sql:
        logger.warning(f"{log_prefix}No candidate SQL produced. Feedback: {candidate.feedback[:200]}")
        return ChatAnswer(text=NO_QUERY_MESSAGE, candidate=candidate)
    if not candidate.is_valid:
        # Remaining rule issues are left for the gateway and the repair loop to catch
        logger.info(f"{log_prefix}Candidate has unresolved issues: {candidate.rule_violations + candidate.schema_issues}")

    try:
        outcome = await repair_loop.validate_and_correct(candidate.sql, connection_string, caller)
    except GatewayConnectionError as e:
        logger.error(f"{log_prefix}Database unreachable: {e}")
        text = (
            f"{fence_sql(candidate.sql)}\n\nI couldn't reach the database ({e.connection_hint or 'unknown host'}). "
            "Please check the connection and try again."
        )
        return ChatAnswer(text=text, sql=candidate.sql, candidate=candidate)

    text = render_answer(candidate, outcome)
    sql = outcome.sql if outcome.state != RepairState.REJECTED else None
    logger.info(f"{log_prefix}Finished with state {outcome.state.value} ({outcome.executions} executions, {outcome.corrections} corrections).")
    return ChatAnswer(text=text, sql=sql, candidate=candidate, outcome=outcome)


async def generate_chat_name(question: str, llm: BaseChatModel) -> str:
    """Short title for a new chat. Falls back to the start of the question."""
    fallback = " ".join(question.split()[:5]) or "New conversation"
    prompt = ChatPromptTemplate.from_messages([("system", CHAT_NAME_SYSTEM_PROMPT), ("human", "{question}")])
    try:
        response = await (prompt | llm).ainvoke({"question": question})
    except (openai.APIConnectionError, openai.APITimeoutError, openai.RateLimitError, openai.APIStatusError) as e:
        logger.warning(f"[ChatName] Could not generate a chat name: {e}")
        return fallback
    name = str(response.content).strip().strip('"').strip("'")
    return name[:60] or fallback
