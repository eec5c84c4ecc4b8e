import asyncio
import logging
import uuid
from typing import AsyncIterator, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from fastapi.responses import StreamingResponse

from arksql.chat_store import ChatOwnershipError, RepositoryError, append_answer
from arksql.core.config import settings
from arksql.langchain.pipeline import ChatAnswer, generate_chat_name, process_chat_message
from arksql.policy.access import CallerContext
from arksql.schemas.chat import ChatMessage, ChatRecord, ChatRequest, ChatSummary
from arksql.security import get_current_caller
from arksql.services import ServiceContainer, get_services

logger = logging.getLogger(__name__)

router = APIRouter()

TIMEOUT_MESSAGE = "This question took too long to answer. Please try a narrower question."


def _format_history_for_agent(messages: List[ChatMessage]) -> List[Dict[str, str]]:
    """Earlier turns as the role/content dicts the orchestrators expect."""
    return [{"role": m.role, "content": m.content} for m in messages if m.role in ("user", "assistant")]


def _split_question(messages: List[ChatMessage]):
    for index in range(len(messages) - 1, -1, -1):
        if messages[index].role == "user" and messages[index].content.strip():
            return messages[index].content, messages[:index]
    return None, messages


def _chunks(text: str) -> List[str]:
    # Paragraph-sized pieces; the client renders markdown as it arrives
    parts = text.split("\n\n")
    return [part + ("\n\n" if i < len(parts) - 1 else "") for i, part in enumerate(parts)]


@router.post("/chat", tags=["chat"])
async def chat(
    chat_request: ChatRequest,
    x_connection_string: Optional[str] = Header(None),
    caller: CallerContext = Depends(get_current_caller),
    services: ServiceContainer = Depends(get_services),
):
    if not chat_request.id:
        logger.info("[Chat] Bad request: No id provided")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No id provided")
    try:
        chat_id = str(uuid.UUID(chat_request.id))
    except ValueError:
        logger.info(f"[Chat] Bad request: Invalid UUID format '{chat_request.id}'")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid id")

    existing = await services.chat_store.get(chat_id)
    if existing is not None and existing.user_id != caller.user_id:
        logger.warning(f"[Chat] Unauthorized: chat {chat_id} belongs to a different user.")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    connection_string = x_connection_string or settings.TARGET_DATABASE_URL
    if not connection_string:
        logger.info("[Chat] Bad request: Missing connection string")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No connection string provided")

    question, earlier = _split_question(chat_request.messages)
    if question is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No question provided")

    request_id = uuid.uuid4()
    should_update_chats = existing is None
    logger.info(f"[Chat] [ReqID: {request_id}] Chat {chat_id} (new: {should_update_chats}), {len(earlier)} earlier messages.")

    async def answer_stream() -> AsyncIterator[str]:
        try:
            answer = await asyncio.wait_for(
                process_chat_message(
                    question,
                    caller,
                    connection_string,
                    services.orchestrator,
                    services.repair_loop,
                    history=_format_history_for_agent(earlier),
                ),
                timeout=settings.CHAT_MAX_DURATION_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.error(f"[Chat] [ReqID: {request_id}] Exceeded {settings.CHAT_MAX_DURATION_SECONDS}s.")
            answer = ChatAnswer(text=TIMEOUT_MESSAGE)
        except Exception as e:
            logger.error(f"[Chat] [ReqID: {request_id}] Unexpected error: {e}", exc_info=True)
            answer = ChatAnswer(text="An unexpected error occurred while answering. Please try again.")

        for piece in _chunks(answer.text):
            yield piece

        await _store_chat(services, chat_id, caller, chat_request.messages, answer, existing is None, question, request_id)

    return StreamingResponse(
        answer_stream(),
        media_type="text/plain; charset=utf-8",
        headers={"x-should-update-chats": str(should_update_chats).lower()},
    )


async def _store_chat(
    services: ServiceContainer,
    chat_id: str,
    caller: CallerContext,
    messages: List[ChatMessage],
    answer: ChatAnswer,
    is_new: bool,
    question: str,
    request_id: uuid.UUID,
) -> None:
    name = await generate_chat_name(question, services.naming_llm) if is_new else ""
    record = ChatRecord(id=chat_id, user_id=caller.user_id, name=name, messages=append_answer(messages, answer.text))
    try:
        await services.chat_store.save(record)
        logger.info(f"[Chat] [ReqID: {request_id}] Chat {chat_id} stored.")
    except ChatOwnershipError as e:
        logger.warning(f"[Chat] [ReqID: {request_id}] {e}")
    except RepositoryError as e:
        logger.error(f"[Chat] [ReqID: {request_id}] Error updating chat store: {e}", exc_info=True)


@router.get("/chats", response_model=List[ChatSummary], tags=["chat"])
async def list_chats(
    caller: CallerContext = Depends(get_current_caller),
    services: ServiceContainer = Depends(get_services),
):
    """The caller's chats, newest first."""
    try:
        records = await services.chat_store.list_for_user(caller.user_id)
    except RepositoryError as e:
        logger.error(f"[Chat] Error listing chats for {caller.user_id}: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Chats are unavailable.")
    return [ChatSummary(id=r.id, name=r.name, created_at=r.created_at) for r in records]
