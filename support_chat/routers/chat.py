"""
Live channel for the support chat.

One WebSocket per connected client at ``/ws?token=<jwt>``. Frames are JSON
objects ``{"type": ..., "data": {...}}`` in both directions.

Client -> server:
    join / leave          {"room"}  own identity, or admin-broadcast for admins
    send-message          {"conversationId", "content", "messageType"?, "attachment"?, "clientMessageId"?}
    mark-read             {"conversationId"}
    typing                {"conversationId", "isTyping"}
    send-notification     {"targetId"?, "message"}  admins only
    ping

Server -> client:
    message-received, messages-read, message-ack, read-ack, typing,
    notification, user-online, user-offline, pong, error
"""

import asyncio
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from support_chat.config import ADMIN_BROADCAST_GROUP, PRESENCE_TTL_SECONDS
from support_chat.database.connection import mongo_db_dependency
from support_chat.exceptions import AuthenticationError, ChatError, ForbiddenError, ValidationError
from support_chat.models.user import Role
from support_chat.repositories.conversation_repository import ConversationRepository
from support_chat.repositories.user_repository import UserRepository
from support_chat.schemas.chat import SendMessageRequest, WsInbound
from support_chat.schemas.user import CurrentUser
from support_chat.services.chat_service import ChatService
from support_chat.services.delivery import DeliveryService
from support_chat.utils.dependencies import current_user_from_token
from support_chat.utils.websocket_manager import ConnectionManager


router = APIRouter(tags=["chat"])


def _field_errors(exc: PydanticValidationError) -> Dict[str, list]:
    errors: Dict[str, list] = {}
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ())) or "data"
        errors.setdefault(field, []).append(err.get("msg", "invalid"))
    return errors


class GatewaySession:
    """State and event handlers of one connected channel."""

    def __init__(
        self,
        websocket: WebSocket,
        caller: CurrentUser,
        service: ChatService,
        connections: ConnectionManager,
        delivery: DeliveryService,
        bus,
    ) -> None:
        self.websocket = websocket
        self.caller = caller
        self.service = service
        self.connections = connections
        self.delivery = delivery
        self.bus = bus
        self.handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[None]]] = {
            "join": self.on_join,
            "leave": self.on_leave,
            "send-message": self.on_send_message,
            "mark-read": self.on_mark_read,
            "typing": self.on_typing,
            "send-notification": self.on_send_notification,
            "ping": self.on_ping,
        }

    async def send(self, event_type: str, data: Dict[str, Any]) -> None:
        await self.websocket.send_json({"type": event_type, "data": data})

    async def open(self) -> None:
        first = await self.connections.register(self.caller.id, self.caller.role, self.websocket)
        if first:
            await self.went_online()

    async def close(self) -> None:
        if await self.connections.unregister(self.caller.id, self.websocket):
            await self.went_offline()

    async def went_online(self) -> None:
        try:
            await self.bus.set_presence(self.caller.id)
        except Exception as exc:
            logger.warning(f"Could not record presence for {self.caller.id}: {exc!r}")
        if self.caller.role is Role.USER:
            await self.delivery.deliver_to_group(ADMIN_BROADCAST_GROUP, {"type": "user-online", "data": {"userId": self.caller.id}})

    async def went_offline(self) -> None:
        try:
            await self.bus.clear_presence(self.caller.id)
        except Exception as exc:
            logger.warning(f"Could not clear presence for {self.caller.id}: {exc!r}")
        if self.caller.role is Role.USER:
            await self.delivery.deliver_to_group(ADMIN_BROADCAST_GROUP, {"type": "user-offline", "data": {"userId": self.caller.id}})

    async def dispatch(self, raw: str) -> None:
        try:
            frame = WsInbound.model_validate(json.loads(raw))
        except (ValueError, PydanticValidationError):
            await self.send("error", ValidationError("Frames must be JSON objects with a 'type'").to_dict())
            return
        handler = self.handlers.get(frame.type)
        if handler is None:
            await self.send("error", ValidationError(f"Unknown event type: {frame.type}").to_dict())
            return
        try:
            await handler(frame.data)
        except ChatError as exc:
            await self.send("error", exc.to_dict())

    def _room(self, data: Dict[str, Any]) -> str:
        room = str(data.get("room") or "")
        if room == self.caller.id:
            return room
        if room == ADMIN_BROADCAST_GROUP and self.caller.is_admin:
            return room
        raise ForbiddenError(f"Cannot join room {room!r}")

    async def on_join(self, data: Dict[str, Any]) -> None:
        room = self._room(data)
        if room == self.caller.id:
            if await self.connections.register(self.caller.id, self.caller.role, self.websocket):
                await self.went_online()
        else:
            await self.connections.join(room, self.websocket)

    async def on_leave(self, data: Dict[str, Any]) -> None:
        room = self._room(data)
        if room == self.caller.id:
            await self.close()
        else:
            await self.connections.leave(room, self.websocket)

    async def on_send_message(self, data: Dict[str, Any]) -> None:
        conversation_id = str(data.get("conversationId") or "")
        try:
            body = SendMessageRequest.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError("Validation failed", details=_field_errors(exc))
        message = await self.service.send_message(
            self.caller,
            conversation_id,
            body.content,
            message_type=body.message_type,
            attachment=body.attachment,
            client_message_id=body.client_message_id,
        )
        await self.send(
            "message-ack",
            {
                "conversationId": conversation_id,
                "message": message.model_dump(mode="json", by_alias=True),
                "clientMessageId": body.client_message_id,
            },
        )

    async def on_mark_read(self, data: Dict[str, Any]) -> None:
        conversation_id = str(data.get("conversationId") or "")
        updated = await self.service.mark_read(self.caller, conversation_id)
        await self.send("read-ack", {"conversationId": conversation_id, "updated": updated})

    async def on_typing(self, data: Dict[str, Any]) -> None:
        conversation_id = str(data.get("conversationId") or "")
        recipients = await self.service.counterparts(self.caller, conversation_id)
        groups = [] if self.caller.is_admin else [ADMIN_BROADCAST_GROUP]
        event = {
            "type": "typing",
            "data": {"conversationId": conversation_id, "userId": self.caller.id, "isTyping": bool(data.get("isTyping"))},
        }
        await self.delivery.deliver(recipients, event, groups=groups)

    async def on_send_notification(self, data: Dict[str, Any]) -> None:
        if not self.caller.is_admin:
            raise ForbiddenError("Only admins can send notifications")
        message = str(data.get("message") or "").strip()
        if not message:
            raise ValidationError("Validation failed", details={"message": ["Notification text is required"]})
        event = {
            "type": "notification",
            "data": {
                "id": uuid.uuid4().hex,
                "message": message,
                "from": self.caller.id,
                "sentAt": datetime.now(timezone.utc).isoformat(),
            },
        }
        target = data.get("targetId")
        if target:
            await self.delivery.deliver([str(target)], event)
        else:
            await self.delivery.broadcast(event)

    async def on_ping(self, data: Dict[str, Any]) -> None:
        await self.send("pong", {})


def get_socket_chat_service(websocket: WebSocket, db=Depends(mongo_db_dependency)) -> ChatService:
    return ChatService(ConversationRepository(db), UserRepository(db), websocket.app.state.delivery)


@router.websocket("/ws")
async def chat_socket(websocket: WebSocket, service: ChatService = Depends(get_socket_chat_service)):
    try:
        caller = current_user_from_token(websocket.query_params.get("token"))
    except AuthenticationError:
        await websocket.close(code=4401)
        return

    await websocket.accept()
    state = websocket.app.state
    session = GatewaySession(websocket, caller, service, state.connections, state.delivery, state.bus)

    heartbeat_task = None
    try:
        await session.open()
        logger.info(f"{caller.role.value} {caller.id} connected")

        if getattr(state.bus, "enabled", False):
            async def _presence_heartbeat():
                while True:
                    try:
                        await state.bus.set_presence(caller.id, ttl_seconds=PRESENCE_TTL_SECONDS)
                    except Exception as exc:
                        logger.warning(f"Presence heartbeat for {caller.id} failed: {exc!r}")
                    await asyncio.sleep(PRESENCE_TTL_SECONDS / 2)
            heartbeat_task = asyncio.create_task(_presence_heartbeat())

        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                break
            if frame.get("text") is not None:
                await session.dispatch(frame["text"])
            else:
                await session.send("error", ValidationError("Only text frames are supported").to_dict())
    except WebSocketDisconnect:
        pass
    finally:
        if heartbeat_task:
            heartbeat_task.cancel()
        await session.close()
        logger.info(f"{caller.role.value} {caller.id} disconnected")
