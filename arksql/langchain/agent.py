import asyncio
import functools
import json
import logging
import operator
import uuid
from typing import Annotated, Any, Dict, List, Optional, Sequence, TypedDict

import openai
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, ToolMessage
from langchain_core.prompts import ChatPromptTemplate, MessagesPlaceholder
from langchain_core.runnables import RunnableConfig
from langchain_core.tools import BaseTool
from langgraph.errors import GraphRecursionError
from langgraph.graph import END, StateGraph

from arksql.core.config import settings
from arksql.core.errors import EmbeddingFailure, StoreFailure, SynthesisError
from arksql.db.connection import ConnectionFactory, get_async_db_connection
from arksql.langchain.llm import is_retryable_error
from arksql.langchain.orchestrator import (
    MODE_CAPABILITIES,
    SinglePassOrchestrator,
    SynthesisOrchestrator,
    history_to_messages,
)
from arksql.langchain.tools.common import tool_error
from arksql.langchain.tools.documentation_tool import DocumentationSearchTool
from arksql.langchain.tools.name_resolver_tool import TenantNameResolverTool
from arksql.langchain.tools.schema_tools import get_schema_tools
from arksql.langchain.tools.validate_tool import ValidateQueryTool
from arksql.policy.access import AccessPolicy, CallerContext
from arksql.prompts import RETRIEVAL_AGENT_SYSTEM_PROMPT, SQL_SYSTEM_PROMPT
from arksql.retrieval.document_store import SemanticDocumentStore, format_search_results
from arksql.schemas.query import CandidateQuery
from arksql.schemas.schema import SchemaTable

logger = logging.getLogger(__name__)


# --- Define the Agent State ---
class AgentState(TypedDict):
    messages: Annotated[Sequence[BaseMessage], operator.add]
    request_id: Optional[str]
    tool_calls_made: Annotated[int, operator.add]


# --- Tool execution with retries ---
async def execute_with_retry(tool: BaseTool, args: Dict[str, Any], tool_call_id: str, retries: int = settings.TOOL_EXECUTION_RETRIES) -> ToolMessage:
    attempt = 0
    last_exception: Optional[Exception] = None
    while attempt <= retries:
        logger.info(f"[ToolRetry] Attempt {attempt + 1}/{retries + 1} for tool '{tool.name}' (ID: {tool_call_id}). Args: {str(args)[:200]}")
        try:
            output = await tool.ainvoke(args)
            content = output if isinstance(output, str) else json.dumps(output)
            return ToolMessage(content=content, name=tool.name, tool_call_id=tool_call_id)
        except Exception as e:
            last_exception = e
            logger.warning(f"[ToolRetry] Attempt {attempt + 1} for tool '{tool.name}' (ID: {tool_call_id}) failed. Error: {e}")
            if attempt < retries and is_retryable_error(e):
                delay = settings.TOOL_RETRY_DELAY_SECONDS * (2 ** attempt)
                logger.info(f"[ToolRetry] Retryable error for '{tool.name}'. Retrying in {delay:.2f} seconds...")
                await asyncio.sleep(delay)
                attempt += 1
                continue
            break
    logger.error(f"[ToolRetry] Tool '{tool.name}' (ID: {tool_call_id}) failed: {last_exception}")
    return ToolMessage(
        content=tool_error("TOOL_EXECUTION_FAILED", f"Tool '{tool.name}' failed. Error details: {last_exception}"),
        name=tool.name,
        tool_call_id=tool_call_id,
    )


# --- Graph nodes ---
async def agent_node(state: AgentState, runnable) -> Dict[str, Any]:
    response = await runnable.ainvoke({"messages": list(state["messages"])})
    calls = getattr(response, "tool_calls", None) or []
    logger.debug(f"[AgentNode] [ReqID: {state.get('request_id')}] Model requested {len(calls)} tool calls.")
    return {"messages": [response], "tool_calls_made": 0}


async def tools_node(state: AgentState, tools: List[BaseTool]) -> Dict[str, Any]:
    last_message = state["messages"][-1] if state["messages"] else None
    if not isinstance(last_message, AIMessage) or not last_message.tool_calls:
        return {"messages": [], "tool_calls_made": 0}

    tool_map = {tool.name: tool for tool in tools}
    pending = []
    messages: List[ToolMessage] = []
    for call in last_message.tool_calls:
        name = call.get("name")
        call_id = call.get("id") or f"tool_call_{uuid.uuid4()}"
        tool = tool_map.get(name)
        if tool is None:
            logger.error(f"[ToolsNode] Tool '{name}' (ID: {call_id}) requested by LLM not found. Skipping.")
            messages.append(ToolMessage(
                content=tool_error("TOOL_NOT_FOUND", f"Tool '{name}' is not available."),
                name=name or "unknown",
                tool_call_id=call_id,
            ))
            continue
        pending.append(execute_with_retry(tool, call.get("args", {}), call_id))

    messages.extend(await asyncio.gather(*pending))
    logger.info(f"[ToolsNode] Executed {len(pending)} tool calls: {[c.get('name') for c in last_message.tool_calls]}")
    return {"messages": messages, "tool_calls_made": len(last_message.tool_calls)}


def should_continue(state: AgentState) -> str:
    last_message = state["messages"][-1] if state["messages"] else None
    if isinstance(last_message, AIMessage) and last_message.tool_calls:
        return "tools"
    return END


def create_graph_app(llm: BaseChatModel, tools: List[BaseTool], prompt: ChatPromptTemplate):
    runnable = prompt | llm.bind_tools(tools)
    workflow = StateGraph(AgentState)
    workflow.add_node("agent", functools.partial(agent_node, runnable=runnable))
    workflow.add_node("tools", functools.partial(tools_node, tools=tools))
    workflow.set_entry_point("agent")
    workflow.add_conditional_edges("agent", should_continue, {"tools": "tools", END: END})
    workflow.add_edge("tools", "agent")
    return workflow.compile()


class RetrievalAugmentedOrchestrator(SynthesisOrchestrator):
    """Tool-using agent seeded with documentation retrieved for the question.

    If documentation cannot be retrieved (embedding or vector store failure)
    the request falls back to single-pass synthesis over the full schema.
    """

    mode = "retrieval_augmented"
    capabilities = MODE_CAPABILITIES["retrieval_augmented"]

    def __init__(
        self,
        llm: BaseChatModel,
        policy: AccessPolicy,
        store: SemanticDocumentStore,
        connection_factory: ConnectionFactory = get_async_db_connection,
        feedback_rounds: int = settings.SYNTHESIS_FEEDBACK_ROUNDS,
        max_steps: int = settings.AGENT_MAX_STEPS,
    ):
        super().__init__(llm, policy, connection_factory, feedback_rounds)
        self.store = store
        self.max_steps = max_steps
        self.fallback = SinglePassOrchestrator(llm, policy, connection_factory, feedback_rounds)

    def get_tools(self, caller: CallerContext, connection_string: str, introspector, tables: List[SchemaTable]) -> List[BaseTool]:
        return [
            DocumentationSearchTool(store=self.store),
            TenantNameResolverTool(caller=caller, connection_string=connection_string, connection_factory=self.connection_factory),
            *get_schema_tools(introspector),
            ValidateQueryTool(caller=caller, policy=self.policy, tables=tables or None),
        ]

    async def synthesize(
        self,
        question: str,
        caller: CallerContext,
        connection_string: Optional[str] = None,
        history: Optional[List[Dict]] = None,
    ) -> CandidateQuery:
        request_id = str(uuid.uuid4())
        log_prefix = f"[RetrievalAgent] [ReqID: {request_id}] [Tenant: {caller.tenant_id}] "
        logger.info(f"{log_prefix}Synthesizing SQL for: '{question[:100]}'")

        try:
            documents = await self.store.search(question)
        except (EmbeddingFailure, StoreFailure) as e:
            logger.warning(f"{log_prefix}Documentation retrieval failed ({e}); falling back to full-schema synthesis.")
            return await self.fallback.synthesize(question, caller, connection_string, history)
        doc_context = format_search_results(documents)

        cs = connection_string or settings.TARGET_DATABASE_URL
        introspector = self.introspector_for(cs, caller)
        tables, _ = await self.load_schema(introspector)
        tools = self.get_tools(caller, cs, introspector, tables)

        prompt = ChatPromptTemplate.from_messages(
            [("system", RETRIEVAL_AGENT_SYSTEM_PROMPT), MessagesPlaceholder(variable_name="messages")]
        ).partial(**self.prompt_variables(question, caller, doc_context))
        graph_app = create_graph_app(self.llm, tools, prompt)

        initial_state = AgentState(
            messages=history_to_messages(history) + [HumanMessage(content=question)],
            request_id=request_id,
            tool_calls_made=0,
        )
        try:
            final_state = await graph_app.ainvoke(initial_state, config=RunnableConfig(recursion_limit=self.max_steps))
        except (openai.APIConnectionError, openai.APITimeoutError, openai.RateLimitError, openai.APIStatusError) as e:
            logger.error(f"{log_prefix}Language model call failed inside the agent: {e}")
            raise SynthesisError(f"The language model is unavailable: {e}") from e
        except GraphRecursionError as e:
            logger.error(f"{log_prefix}Agent step limit ({self.max_steps}) exceeded: {e}")
            return CandidateQuery(
                is_valid=False,
                feedback=f"The agent did not settle on a query within {self.max_steps} steps.",
                mode=self.mode,
            )

        final_message = final_state["messages"][-1] if final_state["messages"] else None
        response_text = final_message.content if isinstance(final_message, AIMessage) else ""
        if not isinstance(response_text, str):
            response_text = str(response_text)
        logger.info(f"{log_prefix}Agent finished after {final_state.get('tool_calls_made', 0)} tool calls.")

        # Feedback rounds run without tools, over the documentation the agent started from
        feedback_messages = await self.render_messages(SQL_SYSTEM_PROMPT, question, caller, doc_context, history)
        return await self.finalize(feedback_messages, response_text, caller, tables)
