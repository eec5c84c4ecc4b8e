"""Tests for SQL synthesis in its three modes and for the chat pipeline."""
import asyncio
import json
from typing import List

import httpx
import openai
import pytest
from aiolimiter import AsyncLimiter
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage
from pydantic import Field

from arksql.cache import TTLCache
from arksql.core.errors import SynthesisError
from arksql.gateway import QueryExecutionGateway
from arksql.langchain.agent import RetrievalAugmentedOrchestrator
from arksql.langchain.critique import MultiAgentCritiqueOrchestrator, merge_feedback
from arksql.langchain.orchestrator import NO_SQL_FEEDBACK, SinglePassOrchestrator
from arksql.langchain.pipeline import (
    CORRECTED_CAVEAT,
    MODEL_UNAVAILABLE_MESSAGE,
    NO_QUERY_MESSAGE,
    POLICY_REFUSAL,
    generate_chat_name,
    process_chat_message,
    render_answer,
)
from arksql.langchain.repair import SQLCorrector, SQLRepairLoop
from arksql.retrieval.backends import InMemoryVectorBackend
from arksql.retrieval.document_store import SemanticDocumentStore
from arksql.retrieval.embeddings import EmbeddingProvider
from arksql.schemas.query import (
    CandidateQuery,
    CritiqueResult,
    ExecutionResult,
    ExecutionStatus,
    RepairOutcome,
    RepairState,
    RowSet,
)

from tests.fakes import TARGET_DB, FakeDatabase, FakeResult, KeywordEmbeddings, RoutedChatModel, scripted

SCOPED_SQL = "SELECT COUNT(*) FROM users WHERE diocese_id = 43"
UNSCOPED_SQL = "SELECT COUNT(*) FROM users"
FINAL_SQL = "SELECT COUNT(*) FROM users WHERE diocese_id = 43 AND role = 5"
VOCABULARY = ["users", "teachers", "diocese", "count"]


def fenced(sql: str, prose: str = "Here is the query:") -> str:
    return f"{prose}\n```sql\n{sql}\n```"


def system_text(messages) -> str:
    return next((m.content for m in messages if isinstance(m, SystemMessage)), "")


def counting_database() -> FakeDatabase:
    def handler(sql: str) -> FakeResult:
        if sql.upper().startswith("EXPLAIN"):
            return FakeResult([{"QUERY PLAN": [{"Plan": {"Node Type": "Aggregate"}}]}])
        return FakeResult([{"count": 10}])
    return FakeDatabase(handler)


def make_store(embeddings: KeywordEmbeddings) -> SemanticDocumentStore:
    cache = TTLCache(ttl_seconds=60, max_entries=10, name="doc-test")
    return SemanticDocumentStore(EmbeddingProvider(embeddings, dimensions=len(VOCABULARY)), InMemoryVectorBackend(), cache)


class TestSinglePass:
    async def test_valid_query_in_one_call(self, policy, diocese_caller):
        """A scoped query comes back valid after a single model call."""
        llm = scripted(fenced(SCOPED_SQL))
        orchestrator = SinglePassOrchestrator(llm, policy, connection_factory=FakeDatabase())

        candidate = await orchestrator.synthesize("How many users are in my diocese?", diocese_caller, TARGET_DB)

        assert candidate.is_valid
        assert candidate.sql == candidate.constructed_query == SCOPED_SQL
        assert candidate.mode == "single_pass"
        assert len(llm.calls) == 1
        system = system_text(llm.calls[0])
        assert "Table: public.users [PROTECTED" in system
        assert "diocese_id = 43" in system

    async def test_feedback_round_fixes_missing_filter(self, policy, diocese_caller):
        """Rule violations are fed back once and the revised query is kept."""
        llm = scripted(fenced(UNSCOPED_SQL), fenced(SCOPED_SQL, "Fixed:"))
        orchestrator = SinglePassOrchestrator(llm, policy, connection_factory=FakeDatabase(), feedback_rounds=1)

        candidate = await orchestrator.synthesize("How many users?", diocese_caller, TARGET_DB)

        assert candidate.is_valid
        assert candidate.sql == SCOPED_SQL
        assert candidate.constructed_query == UNSCOPED_SQL
        assert len(llm.calls) == 2
        feedback_prompt = llm.calls[1][-1]
        assert isinstance(feedback_prompt, HumanMessage)
        assert "Missing diocese_id filter: diocese_id = 43" in feedback_prompt.content

    async def test_feedback_rounds_are_bounded(self, policy, diocese_caller):
        """When the model never fixes the query the candidate stays invalid with its violations."""
        llm = scripted(fenced(UNSCOPED_SQL), fenced(UNSCOPED_SQL), fenced(UNSCOPED_SQL))
        orchestrator = SinglePassOrchestrator(llm, policy, connection_factory=FakeDatabase(), feedback_rounds=1)

        candidate = await orchestrator.synthesize("How many users?", diocese_caller, TARGET_DB)

        assert not candidate.is_valid
        assert candidate.rule_violations == ["Missing diocese_id filter: diocese_id = 43"]
        assert len(llm.calls) == 2

    async def test_response_without_sql_block(self, policy, diocese_caller):
        """Prose-only answers produce an invalid candidate with fixed feedback."""
        llm = scripted("I am not sure what you mean.")
        candidate = await SinglePassOrchestrator(llm, policy, connection_factory=FakeDatabase()).synthesize("Hmm?", diocese_caller, TARGET_DB)
        assert not candidate.is_valid
        assert candidate.sql == ""
        assert candidate.feedback == NO_SQL_FEEDBACK

    async def test_unknown_column_is_reported(self, policy, diocese_caller):
        """Columns missing from the catalog show up as schema issues."""
        sql = "SELECT u.nickname FROM users u WHERE u.diocese_id = 43"
        llm = scripted(fenced(sql))
        orchestrator = SinglePassOrchestrator(llm, policy, connection_factory=FakeDatabase(), feedback_rounds=0)

        candidate = await orchestrator.synthesize("Nicknames?", diocese_caller, TARGET_DB)

        assert not candidate.is_valid
        assert candidate.schema_issues == ['Column "nickname" does not exist in table "users"']

    async def test_unreachable_catalog_continues_without_schema(self, policy, diocese_caller):
        """A catalog failure is logged and synthesis goes ahead."""
        db = FakeDatabase()
        db.connect_error = OSError("Connection refused")
        llm = scripted(fenced(SCOPED_SQL))

        candidate = await SinglePassOrchestrator(llm, policy, connection_factory=db).synthesize("Users?", diocese_caller, TARGET_DB)

        assert candidate.is_valid
        assert "Schema unavailable." in system_text(llm.calls[0])

    async def test_history_is_part_of_the_prompt(self, policy, diocese_caller):
        """Earlier turns are replayed between the system prompt and the question."""
        llm = scripted(fenced(SCOPED_SQL))
        history = [
            {"role": "user", "content": "How many schools do we have?"},
            {"role": "assistant", "content": "There are 12 schools."},
        ]
        await SinglePassOrchestrator(llm, policy, connection_factory=FakeDatabase()).synthesize(
            "And how many users?", diocese_caller, TARGET_DB, history
        )
        contents = [m.content for m in llm.calls[0]]
        assert contents[1:] == ["How many schools do we have?", "There are 12 schools.", "And how many users?"]

    async def test_provider_failure_raises(self, policy, diocese_caller):
        """Provider errors surface as SynthesisError."""
        def unavailable(messages):
            raise openai.APITimeoutError(request=httpx.Request("POST", "https://example.openai.azure.com"))

        orchestrator = SinglePassOrchestrator(RoutedChatModel(route=unavailable), policy, connection_factory=FakeDatabase())
        with pytest.raises(SynthesisError):
            await orchestrator.synthesize("Users?", diocese_caller, TARGET_DB)


def critique_route(messages) -> str:
    system = system_text(messages)
    if system.startswith("You are the Final Query Generator"):
        return fenced(FINAL_SQL, "Merged all fixes.")
    if system.startswith("You are the Query Constructor"):
        return fenced(SCOPED_SQL)
    if "NULL Handling reviewer" in system:
        raise RuntimeError("model overloaded")
    return "- Restrict the count to teachers with role = 5\n" + fenced(FINAL_SQL)


class SlowPrimaryTablesModel(RoutedChatModel):
    """The primary tables reviewer never answers in time."""

    async def _agenerate(self, messages, stop=None, run_manager=None, **kwargs):
        if "Primary Tables reviewer" in system_text(messages):
            await asyncio.sleep(5)
        return self._generate(messages, stop=stop, **kwargs)


class SlowReviewersModel(RoutedChatModel):
    """Every reviewer takes 300 ms and records when it finishes."""
    finished: List[str] = Field(default_factory=list)

    async def _agenerate(self, messages, stop=None, run_manager=None, **kwargs):
        system = system_text(messages)
        if "reviewer." in system:
            await asyncio.sleep(0.3)
            self.finished.append(system[:40])
        return self._generate(messages, stop=stop, **kwargs)


class TestMultiAgentCritique:
    def make(self, llm, policy, **kwargs) -> MultiAgentCritiqueOrchestrator:
        return MultiAgentCritiqueOrchestrator(
            llm, policy, connection_factory=counting_database(), limiter=AsyncLimiter(100, 1), **kwargs
        )

    async def test_failing_reviewer_degrades(self, policy, diocese_caller):
        """One reviewer raising does not fail the request; its feedback becomes a placeholder."""
        llm = RoutedChatModel(route=critique_route)
        candidate = await self.make(llm, policy).synthesize("How many teachers are in my diocese?", diocese_caller, TARGET_DB)

        assert candidate.mode == "multi_agent"
        assert candidate.is_valid
        assert candidate.sql == FINAL_SQL
        assert candidate.constructed_query == SCOPED_SQL
        assert "null handling" not in candidate.source_queries
        assert candidate.source_queries["query constructor"] == SCOPED_SQL
        assert candidate.source_queries["score calculation"] == FINAL_SQL

        generation = [c for c in llm.calls if "Final Query Generator" in system_text(c)]
        assert len(generation) == 1
        assert "Error in null handling analysis: model overloaded" in system_text(generation[0])
        assert "**Query Rules Feedback:**" in system_text(generation[0])
        # Constructor, five reviewers, generator
        assert len(llm.calls) == 7

    async def test_slow_reviewer_times_out(self, policy, diocese_caller):
        """A reviewer past its timeout is replaced by a timeout placeholder."""
        llm = SlowPrimaryTablesModel(route=critique_route)
        orchestrator = self.make(llm, policy, critique_timeout=0.05)

        candidate = await orchestrator.synthesize("How many teachers?", diocese_caller, TARGET_DB)

        generation = next(c for c in llm.calls if "Final Query Generator" in system_text(c))
        assert "Error in primary tables analysis: timed out after 0.05 seconds" in system_text(generation)
        assert candidate.sql == FINAL_SQL

    async def test_cancelled_request_cancels_every_reviewer(self, policy, diocese_caller):
        """When the request is abandoned mid-review, no reviewer keeps running."""
        llm = SlowReviewersModel(route=critique_route)
        orchestrator = self.make(llm, policy, critique_timeout=5)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(orchestrator.synthesize("How many teachers?", diocese_caller, TARGET_DB), timeout=0.1)
        await asyncio.sleep(0.5)

        assert llm.finished == []
        assert not any("Final Query Generator" in system_text(c) for c in llm.calls)

    async def test_final_plan_is_attached(self, policy, diocese_caller):
        """The final statement is explained and the plan prefixed to the notes."""
        candidate = await self.make(RoutedChatModel(route=critique_route), policy).synthesize("Teachers?", diocese_caller, TARGET_DB)
        assert candidate.optimization_notes.startswith("Query Explanation:")
        assert "Aggregate" in candidate.optimization_notes

    async def test_constructor_without_sql_stops_early(self, policy, diocese_caller):
        """No reviewers run when the constructor produced nothing to review."""
        llm = RoutedChatModel(route=lambda messages: "I need more information.")
        candidate = await self.make(llm, policy).synthesize("Teachers?", diocese_caller, TARGET_DB)
        assert candidate.feedback == NO_SQL_FEEDBACK
        assert len(llm.calls) == 1

    def test_merge_feedback_lists_sources(self):
        """Every reviewer's feedback appears under its heading, degraded ones without a source query."""
        critiques = [
            CritiqueResult(agent="query rules", constructed_query=FINAL_SQL, feedback="- add role filter"),
            CritiqueResult(agent="null handling", constructed_query=SCOPED_SQL, feedback="Error in null handling analysis: boom", degraded=True),
        ]
        merged = merge_feedback(SCOPED_SQL, critiques)
        assert "**Query Rules Feedback:**\n- add role filter" in merged
        assert "**NULL Handling Feedback:**\nError in null handling analysis: boom" in merged
        assert "- Query Rules:" in merged
        assert "- Null Handling:" not in merged


class TestRetrievalAugmented:
    async def test_embedding_failure_falls_back_to_single_pass(self, policy, diocese_caller):
        """Without documentation the question is answered over the full schema."""
        embeddings = KeywordEmbeddings(VOCABULARY)
        embeddings.error = openai.APIConnectionError(request=httpx.Request("POST", "https://example.openai.azure.com"))
        llm = scripted(fenced(SCOPED_SQL))
        orchestrator = RetrievalAugmentedOrchestrator(llm, policy, make_store(embeddings), connection_factory=FakeDatabase())

        candidate = await orchestrator.synthesize("How many users?", diocese_caller, TARGET_DB)

        assert candidate.is_valid
        assert candidate.mode == "single_pass"
        assert "Table: public.users" in system_text(llm.calls[0])

    async def test_agent_uses_tools_then_answers(self, policy, diocese_caller):
        """A tool call is executed and its output is visible to the next model step."""
        tool_call = AIMessage(
            content="",
            tool_calls=[{"name": "validate_query", "args": {"sql": UNSCOPED_SQL}, "id": "call_1"}],
        )
        llm = scripted(tool_call, fenced(SCOPED_SQL))
        embeddings = KeywordEmbeddings(VOCABULARY)
        orchestrator = RetrievalAugmentedOrchestrator(llm, policy, make_store(embeddings), connection_factory=FakeDatabase())

        candidate = await orchestrator.synthesize("How many users?", diocese_caller, TARGET_DB)

        assert candidate.mode == "retrieval_augmented"
        assert candidate.is_valid
        assert candidate.sql == SCOPED_SQL
        assert len(embeddings.query_calls) == 1
        tool_messages = [m for m in llm.calls[1] if isinstance(m, ToolMessage)]
        assert len(tool_messages) == 1
        report = json.loads(tool_messages[0].content)
        assert report["is_valid"] is False
        assert "Missing diocese_id filter: diocese_id = 43" in report["errors"]

    async def test_unknown_tool_is_reported_to_the_model(self, policy, diocese_caller):
        """Calls to tools that do not exist come back as a tool error instead of failing."""
        tool_call = AIMessage(content="", tool_calls=[{"name": "drop_everything", "args": {}, "id": "call_9"}])
        llm = scripted(tool_call, fenced(SCOPED_SQL))
        orchestrator = RetrievalAugmentedOrchestrator(llm, policy, make_store(KeywordEmbeddings(VOCABULARY)), connection_factory=FakeDatabase())

        await orchestrator.synthesize("How many users?", diocese_caller, TARGET_DB)

        error = json.loads(next(m for m in llm.calls[1] if isinstance(m, ToolMessage)).content)
        assert error["error"]["type"] == "TOOL_NOT_FOUND"


class TestChatPipeline:
    def build(self, policy, llm, db) -> tuple:
        gateway = QueryExecutionGateway(policy, TTLCache(ttl_seconds=60, max_entries=10), connection_factory=db)
        orchestrator = SinglePassOrchestrator(llm, policy, connection_factory=db)
        return orchestrator, SQLRepairLoop(gateway, SQLCorrector(llm), sleep=lambda delay: asyncio.sleep(0))

    async def test_question_to_answer(self, policy, diocese_caller):
        """A scoped question is synthesized, executed once and answered with SQL and rows."""
        db = counting_database()
        llm = scripted(fenced(SCOPED_SQL, "This counts the users in your diocese."))
        orchestrator, loop = self.build(policy, llm, db)

        answer = await process_chat_message("How many users are in my diocese?", diocese_caller, TARGET_DB, orchestrator, loop)

        assert answer.succeeded
        assert answer.sql == SCOPED_SQL
        assert db.user_statements == [SCOPED_SQL]
        assert "This counts the users in your diocese." in answer.text
        assert f"```sql\n{SCOPED_SQL}\n```" in answer.text
        assert '"rows": [{"count": 10}]' in answer.text
        assert CORRECTED_CAVEAT not in answer.text

    async def test_no_sql_gives_a_rephrase_hint(self, policy, diocese_caller):
        """Nothing is executed when synthesis produced no statement."""
        db = counting_database()
        orchestrator, loop = self.build(policy, scripted("No idea."), db)
        answer = await process_chat_message("Blah?", diocese_caller, TARGET_DB, orchestrator, loop)
        assert answer.text == NO_QUERY_MESSAGE
        assert db.user_statements == []

    async def test_model_outage_is_reported_plainly(self, policy, diocese_caller):
        """A provider failure turns into a short apology."""
        def unavailable(messages):
            raise openai.APIConnectionError(request=httpx.Request("POST", "https://example.openai.azure.com"))

        db = counting_database()
        orchestrator, loop = self.build(policy, RoutedChatModel(route=unavailable), db)
        answer = await process_chat_message("Users?", diocese_caller, TARGET_DB, orchestrator, loop)
        assert answer.text == MODEL_UNAVAILABLE_MESSAGE

    async def test_unreachable_database_mentions_host(self, policy, diocese_caller):
        """The SQL is still shown along with where the connection failed."""
        orchestrator = SinglePassOrchestrator(scripted(fenced(SCOPED_SQL)), policy, connection_factory=FakeDatabase())
        broken = FakeDatabase()
        broken.connect_error = OSError("Connection refused")
        gateway = QueryExecutionGateway(policy, TTLCache(ttl_seconds=60, max_entries=10), connection_factory=broken)
        loop = SQLRepairLoop(gateway, SQLCorrector(scripted("unused")))

        answer = await process_chat_message("Users?", diocese_caller, TARGET_DB, orchestrator, loop)

        assert SCOPED_SQL in answer.text
        assert "db.example.com:5432/ark" in answer.text
        assert not answer.succeeded

    async def test_chat_name_from_model(self):
        """The generated name is stripped of quotes."""
        assert await generate_chat_name("How many users are there?", scripted('"Counting users"')) == "Counting users"

    async def test_chat_name_falls_back_to_question(self):
        """Provider errors fall back to the first words of the question."""
        def unavailable(messages):
            raise openai.APITimeoutError(request=httpx.Request("POST", "https://example.openai.azure.com"))

        name = await generate_chat_name("How many users are there in total?", RoutedChatModel(route=unavailable))
        assert name == "How many users are there"


class TestRenderAnswer:
    def outcome(self, state: RepairState, **kwargs) -> RepairOutcome:
        values = {"sql": SCOPED_SQL, "original_sql": SCOPED_SQL, "is_valid": state == RepairState.SUCCESS, "state": state}
        values.update(kwargs)
        return RepairOutcome(**values)

    def test_success_with_correction_has_caveat(self):
        """A corrected query is shown with the caveat and the result."""
        candidate = CandidateQuery(sql=UNSCOPED_SQL, feedback=fenced(UNSCOPED_SQL, "Counting users."))
        result = ExecutionResult(status=ExecutionStatus.SUCCESS, rows=RowSet(row_count=1, fields=["count"], rows=[{"count": 3}]))
        text = render_answer(candidate, self.outcome(RepairState.SUCCESS, original_sql=UNSCOPED_SQL, result=result))
        assert text.startswith("Counting users.")
        assert f"```sql\n{SCOPED_SQL}\n```" in text
        assert UNSCOPED_SQL + "\n" not in text
        assert CORRECTED_CAVEAT in text

    def test_exhausted_reports_last_error(self):
        """After the last attempt the final error is shown with the SQL."""
        text = render_answer(CandidateQuery(sql=SCOPED_SQL), self.outcome(RepairState.EXHAUSTED, executions=3, error="boom"))
        assert "after 3 attempt(s)" in text
        assert text.endswith("Last error: boom")

    def test_policy_rejection_is_a_plain_refusal(self):
        """Rejected statements are never echoed back."""
        result = ExecutionResult(status=ExecutionStatus.POLICY_VIOLATION, message="Query must include diocese_id = 43 filter for security reasons")
        text = render_answer(CandidateQuery(sql=UNSCOPED_SQL), self.outcome(RepairState.REJECTED, sql=UNSCOPED_SQL, result=result, error=result.message))
        assert text.startswith(POLICY_REFUSAL)
        assert "```sql" not in text

    def test_forbidden_statement_refusal(self):
        """A forbidden keyword yields the fixed refusal."""
        result = ExecutionResult(status=ExecutionStatus.FORBIDDEN, message="This action is not allowed DROP")
        text = render_answer(CandidateQuery(sql="DROP TABLE users"), self.outcome(RepairState.REJECTED, result=result, error=result.message))
        assert text == "This action is not allowed DROP"
