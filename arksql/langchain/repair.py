"""Execute a candidate query and, when the database rejects it, ask the model to fix it.

States: PENDING -> EXECUTING -> SUCCESS | CORRECTION_NEEDED -> CORRECTING ->
EXECUTING ... -> SUCCESS | EXHAUSTED. Forbidden and policy outcomes end in
REJECTED and are never corrected. With ``max_retries = k`` the loop makes at
most k attempts, so at most k executions and k - 1 corrections.
"""
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

import openai
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from arksql.core.config import settings
from arksql.core.errors import SynthesisError
from arksql.gateway import QueryExecutionGateway
from arksql.policy.access import CallerContext
from arksql.prompts import CORRECTION_SYSTEM_PROMPT, CORRECTION_USER_PROMPT
from arksql.schemas.query import ExecutionResult, RepairOutcome, RepairState
from arksql.utils import clean_sql_code

logger = logging.getLogger(__name__)


class SQLCorrector:
    """One model call that returns only the corrected statement."""

    def __init__(self, llm: BaseChatModel):
        self.llm = llm

    async def correct(self, sql: str, error: Optional[str]) -> str:
        messages = [
            SystemMessage(content=CORRECTION_SYSTEM_PROMPT),
            HumanMessage(content=CORRECTION_USER_PROMPT.format(sql=sql, error=error or "Unknown error")),
        ]
        try:
            response = await self.llm.ainvoke(messages)
        except (openai.APIConnectionError, openai.APITimeoutError, openai.RateLimitError, openai.APIStatusError) as e:
            raise SynthesisError(f"Correction call failed: {e}") from e
        content = response.content if isinstance(response.content, str) else str(response.content)
        corrected = clean_sql_code(content)
        if not corrected:
            raise SynthesisError("The correction response contained no SQL.")
        return corrected


class _Attempt:
    """Counters shared with a correction cycle that may be cancelled by its timeout."""

    def __init__(self, sql: str):
        self.sql = sql
        self.executions = 0
        self.corrections = 0
        self.history: List[str] = []
        self.result: Optional[ExecutionResult] = None
        self.state = RepairState.PENDING


class SQLRepairLoop:
    def __init__(
        self,
        gateway: QueryExecutionGateway,
        corrector: SQLCorrector,
        max_retries: int = settings.REPAIR_MAX_RETRIES,
        backoff_seconds: float = settings.REPAIR_BACKOFF_SECONDS,
        cycle_timeout: float = settings.REPAIR_CYCLE_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.corrector = corrector
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.cycle_timeout = cycle_timeout
        self.sleep = sleep

    async def _execute(self, progress: _Attempt, connection_string: str, caller: CallerContext) -> None:
        progress.state = RepairState.EXECUTING
        progress.history.append(progress.sql)
        progress.executions += 1
        progress.result = await self.gateway.run(progress.sql, connection_string, caller)

    async def _correct_and_execute(self, progress: _Attempt, error: Optional[str], connection_string: str, caller: CallerContext) -> None:
        progress.state = RepairState.CORRECTING
        corrected = await self.corrector.correct(progress.sql, error)
        progress.corrections += 1
        progress.sql = corrected
        await self._execute(progress, connection_string, caller)

    async def validate_and_correct(
        self,
        sql: str,
        connection_string: str,
        caller: CallerContext,
        max_retries: Optional[int] = None,
    ) -> RepairOutcome:
        limit = max(1, max_retries if max_retries is not None else self.max_retries)
        log_prefix = f"[RepairLoop] [Tenant: {caller.tenant_id}] "
        progress = _Attempt(sql)
        last_error: Optional[str] = None

        await self._execute(progress, connection_string, caller)
        attempts = 1
        while True:
            result = progress.result
            if result is not None and result.ok:
                logger.info(f"{log_prefix}Succeeded after {progress.executions} executions and {progress.corrections} corrections.")
                return self._outcome(sql, progress, RepairState.SUCCESS, None)
            if result is not None and result.rejected:
                logger.warning(f"{log_prefix}Statement rejected by the gateway ({result.status.value}); not correcting.")
                return self._outcome(sql, progress, RepairState.REJECTED, result.message)
            if result is not None and result.message:
                last_error = result.message
            if attempts >= limit:
                logger.warning(f"{log_prefix}Exhausted after {attempts} attempts. Last error: {last_error}")
                return self._outcome(sql, progress, RepairState.EXHAUSTED, last_error)

            progress.state = RepairState.CORRECTION_NEEDED
            delay = self.backoff_seconds * (2 ** (attempts - 1))
            logger.info(f"{log_prefix}Attempt {attempts}/{limit} failed: {last_error}. Correcting in {delay:.2f}s.")
            await self.sleep(delay)

            attempts += 1
            progress.result = None
            try:
                await asyncio.wait_for(
                    self._correct_and_execute(progress, last_error, connection_string, caller),
                    timeout=self.cycle_timeout,
                )
            except asyncio.TimeoutError:
                last_error = f"Correction cycle timed out after {self.cycle_timeout} seconds. Previous error: {last_error}"
                logger.warning(f"{log_prefix}{last_error}")
            except SynthesisError as e:
                logger.warning(f"{log_prefix}Correction failed: {e}")

    @staticmethod
    def _outcome(original_sql: str, progress: _Attempt, state: RepairState, error: Optional[str]) -> RepairOutcome:
        return RepairOutcome(
            sql=progress.sql,
            original_sql=original_sql,
            is_valid=state == RepairState.SUCCESS,
            state=state,
            result=progress.result,
            error=error,
            executions=progress.executions,
            corrections=progress.corrections,
            history=list(progress.history),
        )
