"""Messaging router providing HTTP and WebSocket endpoints.

This module provides:
    - POST /messages: Submit a message
    - GET /messages/conversations/{recipient_id}: Paginated history
    - GET /messages/unread-count: Unread counter for the current user
    - POST /messages/{message_id}/read: Mark a message read
    - POST /messages/{message_id}/resend: Resend a failed message
    - PATCH /messages/{message_id}: Edit a message
    - DELETE /messages/{message_id}: Soft-delete a message
    - GET /presence/{user_id}: Online state
    - WebSocket /ws/messaging: Live channel

Authentication happens in the gateway in front of this service; the HTTP
endpoints trust the ``X-User-Id`` header it sets, and the live channel
expects an ``authenticate`` frame as its first frame.

Protocol Flow (WebSocket):
    1. Client connects, sends {type: "authenticate", userId}
       → Server sends: {type: "connected", userId, sessionId}
    2. Client sends {type: "room:join", recipientId, jobId?} per open thread
       → Server sends: {type: "presence:online|offline", userId: <other>}
    3. Client sends heartbeat / typing / message:read frames
    4. Server pushes message:new, message:status, message:updated,
       typing:*, presence:* events as they happen
    5. On disconnect the session leaves its rooms and is deregistered
"""
import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from .errors import MessagingError, ValidationError, handle_messaging_error
from .events import AuthenticateFrame, ConnectedEvent, ErrorEvent, decode_frame
from .schemas import EditMessageRequest, HistoryPage, Message, SubmitMessageRequest
from .service import MessagingService, get_messaging_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["messaging"])

# 1008 = Policy Violation, 1013 = Try Again Later
CLOSE_POLICY_VIOLATION = 1008
CLOSE_TRY_AGAIN_LATER = 1013


def get_current_user_id(
    x_user_id: Optional[int] = Header(None, alias="X-User-Id"),
) -> int:
    """Current user as set by the authenticating gateway."""
    if x_user_id is None or x_user_id <= 0:
        raise HTTPException(status_code=401, detail="Missing or invalid X-User-Id header")
    return x_user_id


# =============================================================================
# HTTP endpoints
# =============================================================================


@router.post("/messages", status_code=201, response_model=Message)
async def submit_message(
    body: SubmitMessageRequest,
    user_id: int = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> Message:
    """Submit a message to another user.

    Returns once the message is durable. Live delivery continues in the
    background and is reported over the WebSocket.

    Returns:
        The persisted message (201 Created) with server id and createdAt.
    """
    try:
        return await service.submit(user_id, body)
    except MessagingError as e:
        logger.warning(f"[Messages] Submit from user {user_id} rejected: {e.message}")
        raise handle_messaging_error(e)


@router.get("/messages/conversations/{recipient_id}", response_model=HistoryPage)
async def get_conversation(
    recipient_id: int,
    jobId: Optional[int] = Query(None, description="Job thread (omit for the general thread)"),
    after: Optional[int] = Query(None, ge=0, description="Page forward after this message id"),
    before: Optional[int] = Query(None, ge=1, description="Page back before this message id"),
    limit: Optional[int] = Query(None, ge=1, description="Page size"),
    user_id: int = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> HistoryPage:
    """Get one page of the conversation with ``recipient_id``.

    Example:
        GET /messages/conversations/42?jobId=7&before=120&limit=20
    """
    if after is not None and before is not None:
        raise HTTPException(status_code=400, detail="Use either 'after' or 'before', not both")
    try:
        return await service.history(
            user_id, recipient_id, jobId, after=after, before=before, limit=limit
        )
    except MessagingError as e:
        raise handle_messaging_error(e)


@router.get("/messages/unread-count")
async def get_unread_count(
    user_id: int = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> JSONResponse:
    try:
        count = await service.unread_count(user_id)
    except MessagingError as e:
        raise handle_messaging_error(e)
    return JSONResponse({"count": count})


@router.post("/messages/{message_id}/read", response_model=Message)
async def mark_message_read(
    message_id: int,
    user_id: int = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> Message:
    """Mark a message read (recipient only). Idempotent."""
    try:
        return await service.mark_read(user_id, message_id)
    except MessagingError as e:
        raise handle_messaging_error(e)


@router.post("/messages/{message_id}/resend", response_model=Message)
async def resend_message(
    message_id: int,
    user_id: int = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> Message:
    """Resend a failed message (sender only)."""
    try:
        return await service.resend(user_id, message_id)
    except MessagingError as e:
        raise handle_messaging_error(e)


@router.patch("/messages/{message_id}", response_model=Message)
async def edit_message(
    message_id: int,
    body: EditMessageRequest,
    user_id: int = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> Message:
    try:
        return await service.edit(user_id, message_id, body.content)
    except MessagingError as e:
        raise handle_messaging_error(e)


@router.delete("/messages/{message_id}", response_model=Message)
async def delete_message(
    message_id: int,
    user_id: int = Depends(get_current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> Message:
    """Soft-delete a message (sender only). The row is kept."""
    try:
        return await service.delete(user_id, message_id)
    except MessagingError as e:
        raise handle_messaging_error(e)


@router.get("/presence/{target_user_id}")
async def get_presence(
    target_user_id: int,
    service: MessagingService = Depends(get_messaging_service),
) -> JSONResponse:
    return JSONResponse({"userId": target_user_id, "online": service.is_online(target_user_id)})


# =============================================================================
# WebSocket endpoint
# =============================================================================


async def _authenticate(websocket: WebSocket, service: MessagingService) -> Optional[int]:
    """Wait for the authenticate frame. Returns the user id, or None after closing."""
    timeout = service.settings.messaging.auth_timeout_seconds
    try:
        raw = await asyncio.wait_for(websocket.receive_json(), timeout=timeout)
        frame = decode_frame(raw)
    except asyncio.TimeoutError:
        logger.warning("[WS] No authenticate frame received, closing")
        await websocket.close(code=CLOSE_POLICY_VIOLATION)
        return None
    except (ValidationError, json.JSONDecodeError) as e:
        await websocket.send_json(ErrorEvent(error=str(e)).model_dump(mode="json"))
        await websocket.close(code=CLOSE_POLICY_VIOLATION)
        return None

    if not isinstance(frame, AuthenticateFrame):
        await websocket.send_json(ErrorEvent(error="First frame must be authenticate").model_dump(mode="json"))
        await websocket.close(code=CLOSE_POLICY_VIOLATION)
        return None

    if not await service.directory.user_exists(frame.userId):
        logger.warning(f"[WS] Authentication rejected for unknown user {frame.userId}")
        await websocket.send_json(ErrorEvent(error="Unknown user").model_dump(mode="json"))
        await websocket.close(code=CLOSE_POLICY_VIOLATION)
        return None

    return frame.userId


@router.websocket("/ws/messaging")
async def messaging_websocket(
    websocket: WebSocket,
    service: MessagingService = Depends(get_messaging_service),
) -> None:
    """WebSocket endpoint for the live messaging channel.

    Args:
        websocket: The WebSocket connection.
        service: The application's MessagingService.
    """
    await websocket.accept()

    # Enforce max_connections from config (0 = no limit)
    max_connections = service.settings.messaging.max_connections
    if max_connections > 0 and service.registry.connection_count >= max_connections:
        logger.warning(f"[WS] Connection limit ({max_connections}) reached, rejecting")
        await websocket.close(code=CLOSE_TRY_AGAIN_LATER)
        return

    try:
        user_id = await _authenticate(websocket, service)
    except WebSocketDisconnect:
        logger.info("[WS] Client left before authenticating")
        return
    if user_id is None:
        return

    connection = await service.connect(user_id, websocket)
    logger.info(
        f"[WS] User {user_id} connected as session {connection.session_id} "
        f"({service.registry.connection_count} live sessions)"
    )

    try:
        await connection.send(ConnectedEvent(userId=user_id, sessionId=connection.session_id))

        # Main frame loop
        while True:
            try:
                raw = await websocket.receive_json()
            except json.JSONDecodeError:
                await connection.send(ErrorEvent(error="Frames must be JSON"))
                continue

            try:
                frame = decode_frame(raw)
                logger.debug("[WS] Session %s received: type=%s", connection.session_id, frame.type)
                reply = await service.handle_frame(connection, frame)
            except MessagingError as e:
                await connection.send(ErrorEvent(error=e.message))
                continue

            if reply is not None:
                await connection.send(reply)

    except WebSocketDisconnect:
        logger.info(f"[WS] Session {connection.session_id} of user {user_id} disconnected")
    finally:
        await service.disconnect(connection.session_id)
