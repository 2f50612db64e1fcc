import contextlib
import uuid
from typing import Iterator

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from . import auth as auth_utils
from .lifecycle import (
    InvalidTransitionError,
    LifecycleError,
    PersistenceError,
    SessionAccessError,
    SessionConflictError,
    SessionLifecycle,
    SessionNotFoundError,
)
from .live.records import PauseReason
from .live.registry import LiveSessionRegistry
from .schemas import (
    ConversationCreate,
    ConversationOut,
    ConversationStart,
    EndRequest,
    InsightRecoveryOut,
    MessageCreate,
    MessageOut,
    PauseResult,
    SnapshotOut,
)


router = APIRouter(prefix="/api/conversations", tags=["conversations"])

ERROR_STATUS: dict[type[LifecycleError], int] = {
    SessionNotFoundError: status.HTTP_404_NOT_FOUND,
    SessionAccessError: status.HTTP_403_FORBIDDEN,
    SessionConflictError: status.HTTP_409_CONFLICT,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    PersistenceError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def get_lifecycle(request: Request) -> SessionLifecycle:
    return request.app.state.lifecycle


def get_registry(request: Request) -> LiveSessionRegistry:
    return request.app.state.registry


@contextlib.contextmanager
def lifecycle_errors() -> Iterator[None]:
    """Translate lifecycle failures into HTTP errors."""
    try:
        yield
    except LifecycleError as exc:
        raise HTTPException(
            status_code=ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST),
            detail=str(exc),
        ) from exc


@router.post("", response_model=ConversationStart)
async def start_conversation(
    payload: ConversationCreate,
    current_user: dict = Depends(auth_utils.get_current_user),
    lifecycle: SessionLifecycle = Depends(get_lifecycle),
) -> ConversationStart:
    """Start a conversation, or return the one already active.

    A user has at most one active conversation, so this never creates a
    second one.  Starting fresh discards the user's paused snapshot.
    """
    with lifecycle_errors():
        conversation, created = await lifecycle.start_or_resume(current_user["uid"], payload.title)
    return ConversationStart(conversation=ConversationOut.model_validate(conversation), created=created)


@router.get("", response_model=list[ConversationOut])
async def list_conversations(
    current_user: dict = Depends(auth_utils.get_current_user),
    lifecycle: SessionLifecycle = Depends(get_lifecycle),
) -> list[ConversationOut]:
    """List conversations for the authenticated user, newest first."""
    with lifecycle_errors():
        conversations = await lifecycle.list_for_user(current_user["uid"])
    return [ConversationOut.model_validate(conversation) for conversation in conversations]


@router.get("/snapshot", response_model=SnapshotOut)
async def get_snapshot(
    current_user: dict = Depends(auth_utils.get_current_user),
    lifecycle: SessionLifecycle = Depends(get_lifecycle),
) -> SnapshotOut:
    """Fetch the paused snapshot the dashboard offers to continue."""
    with lifecycle_errors():
        snapshot = await lifecycle.get_snapshot(current_user["uid"])
    if snapshot is None:
        raise HTTPException(status_code=404, detail="No paused conversation")
    return SnapshotOut.model_validate(snapshot)


@router.delete("/snapshot", status_code=status.HTTP_204_NO_CONTENT)
async def discard_snapshot(
    current_user: dict = Depends(auth_utils.get_current_user),
    lifecycle: SessionLifecycle = Depends(get_lifecycle),
) -> Response:
    await lifecycle.discard_snapshot(current_user["uid"])
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/recover-insights", response_model=InsightRecoveryOut)
async def recover_insights(
    current_user: dict = Depends(auth_utils.get_current_user),
    lifecycle: SessionLifecycle = Depends(get_lifecycle),
) -> InsightRecoveryOut:
    """Generate missing insights for completed conversations, one at a time."""
    with lifecycle_errors():
        recovery = await lifecycle.recover_insights(current_user["uid"])
    return InsightRecoveryOut(
        total=recovery.total,
        recovered=[ConversationOut.model_validate(conversation) for conversation in recovery.recovered],
        failed=recovery.failed,
    )


@router.get("/{conversation_id}", response_model=ConversationOut)
async def get_conversation(
    conversation_id: uuid.UUID,
    current_user: dict = Depends(auth_utils.get_current_user),
    lifecycle: SessionLifecycle = Depends(get_lifecycle),
) -> ConversationOut:
    """Fetch one conversation by id for the authenticated user."""
    with lifecycle_errors():
        conversation = await lifecycle.get_owned(str(conversation_id), current_user["uid"])
    return ConversationOut.model_validate(conversation)


@router.get("/{conversation_id}/messages", response_model=list[MessageOut])
async def list_messages(
    conversation_id: uuid.UUID,
    current_user: dict = Depends(auth_utils.get_current_user),
    lifecycle: SessionLifecycle = Depends(get_lifecycle),
) -> list[MessageOut]:
    with lifecycle_errors():
        await lifecycle.get_owned(str(conversation_id), current_user["uid"])
        messages = await lifecycle.load_messages(str(conversation_id))
    return [MessageOut.model_validate(message) for message in messages]


@router.post("/{conversation_id}/messages", response_model=MessageOut)
async def add_message(
    conversation_id: uuid.UUID,
    payload: MessageCreate,
    current_user: dict = Depends(auth_utils.get_current_user),
    lifecycle: SessionLifecycle = Depends(get_lifecycle),
    registry: LiveSessionRegistry = Depends(get_registry),
) -> MessageOut:
    """Append a turn.  Connected sessions also re-run their analysis."""
    session_id = str(conversation_id)
    with lifecycle_errors():
        await lifecycle.get_owned(session_id, current_user["uid"])
        live = registry.get(session_id)
        if live is not None:
            message = await live.add_message(payload.content, payload.role)
        else:
            message = await lifecycle.add_message(session_id, payload.role, payload.content)
    return MessageOut.model_validate(message)


@router.delete("/{conversation_id}/messages", response_model=ConversationOut)
async def clear_messages(
    conversation_id: uuid.UUID,
    current_user: dict = Depends(auth_utils.get_current_user),
    lifecycle: SessionLifecycle = Depends(get_lifecycle),
    registry: LiveSessionRegistry = Depends(get_registry),
) -> ConversationOut:
    """Delete every message of the conversation along with its insights."""
    session_id = str(conversation_id)
    with lifecycle_errors():
        conversation = await lifecycle.clear_messages(session_id, current_user["uid"])
    live = registry.get(session_id)
    if live is not None:
        live.messages.clear()
        live.analyzer.reset()
    return ConversationOut.model_validate(conversation)


@router.post("/{conversation_id}/pause", response_model=PauseResult)
async def pause_conversation(
    conversation_id: uuid.UUID,
    current_user: dict = Depends(auth_utils.get_current_user),
    lifecycle: SessionLifecycle = Depends(get_lifecycle),
    registry: LiveSessionRegistry = Depends(get_registry),
) -> PauseResult:
    """Pause a conversation on the user's request.

    A connected session pauses through its orchestrator so the request
    shares the single in-flight lock with browser triggers.
    """
    session_id = str(conversation_id)
    with lifecycle_errors():
        conversation = await lifecycle.get_owned(session_id, current_user["uid"])
        paused = await registry.pause(session_id, PauseReason.MANUAL)
        if paused is None:
            if conversation.status.is_final:
                raise InvalidTransitionError(f"A {conversation.status.value} session cannot be paused")
            messages = await lifecycle.load_messages(session_id)
            paused = await lifecycle.pause_session(
                conversation, messages, PauseReason.MANUAL, conversation.active_seconds
            )
        conversation = await lifecycle.get_owned(session_id, current_user["uid"])
    return PauseResult(paused=paused, conversation=ConversationOut.model_validate(conversation))


@router.post("/{conversation_id}/resume", response_model=ConversationOut)
async def resume_conversation(
    conversation_id: uuid.UUID,
    current_user: dict = Depends(auth_utils.get_current_user),
    lifecycle: SessionLifecycle = Depends(get_lifecycle),
    registry: LiveSessionRegistry = Depends(get_registry),
) -> ConversationOut:
    """Make a paused conversation active again.

    Returns 409 if another conversation of the user is active.
    """
    session_id = str(conversation_id)
    with lifecycle_errors():
        await lifecycle.get_owned(session_id, current_user["uid"])
        live = registry.get(session_id)
        if live is not None:
            conversation = await live.resume()
        else:
            conversation = await lifecycle.resume(session_id, current_user["uid"])
    return ConversationOut.model_validate(conversation)


@router.post("/{conversation_id}/end", response_model=ConversationOut)
async def end_conversation(
    conversation_id: uuid.UUID,
    payload: EndRequest | None = None,
    current_user: dict = Depends(auth_utils.get_current_user),
    lifecycle: SessionLifecycle = Depends(get_lifecycle),
    registry: LiveSessionRegistry = Depends(get_registry),
) -> ConversationOut:
    """Complete a conversation.  Ending twice returns the completed record."""
    session_id = str(conversation_id)
    with lifecycle_errors():
        await lifecycle.get_owned(session_id, current_user["uid"])
        live = registry.get(session_id)
        conversation = None
        if live is not None:
            conversation = await live.end_session(manual=False)
        if conversation is None:
            conversation = await lifecycle.complete(
                session_id,
                current_user["uid"],
                active_seconds=payload.active_seconds if payload is not None else None,
            )
    return ConversationOut.model_validate(conversation)


@router.post("/{conversation_id}/terminate", response_model=ConversationOut)
async def terminate_conversation(
    conversation_id: uuid.UUID,
    current_user: dict = Depends(auth_utils.get_current_user),
    lifecycle: SessionLifecycle = Depends(get_lifecycle),
    registry: LiveSessionRegistry = Depends(get_registry),
) -> ConversationOut:
    """Abandon a conversation without insights."""
    session_id = str(conversation_id)
    with lifecycle_errors():
        conversation = await lifecycle.terminate(session_id, current_user["uid"])
    live = registry.get(session_id)
    if live is not None:
        live.apply_record(conversation)
    return ConversationOut.model_validate(conversation)
