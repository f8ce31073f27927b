from contextlib import asynccontextmanager
from datetime import datetime, timezone
from math import ceil
from typing import Any, Dict, List, Mapping, Optional

from bson import ObjectId
from loguru import logger
from pymongo.errors import PyMongoError

from support_chat.config import ADMIN_BROADCAST_GROUP, MAX_MESSAGE_LENGTH, MAX_PAGE_SIZE, SUPPORT_ADMIN_ID
from support_chat.exceptions import ConflictError, ForbiddenError, NotFoundError, TransientStoreError, ValidationError
from support_chat.models.message import MessageType
from support_chat.models.user import Role
from support_chat.repositories.conversation_repository import ConversationRepository
from support_chat.repositories.user_repository import UserRepository
from support_chat.schemas.chat import Attachment, ConversationOut, ConversationPage, MessageOut, Pagination
from support_chat.schemas.user import CurrentUser
from support_chat.services.delivery import DeliveryService


MESSAGE_RECEIVED = "message-received"
MESSAGES_READ = "messages-read"


def participant_ids(conversation: Mapping[str, Any]) -> List[str]:
    return [entry["user_id"] for entry in conversation.get("participants") or []]


class ChatService:
    """Request/response API of the support chat and the only writer of conversations."""

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        user_repo: UserRepository,
        delivery: DeliveryService,
        support_admin_id: Optional[str] = SUPPORT_ADMIN_ID,
    ) -> None:
        self._conversation_repo = conversation_repo
        self._user_repo = user_repo
        self._delivery = delivery
        self._support_admin_id = support_admin_id

    @asynccontextmanager
    async def _store(self, operation: str):
        try:
            yield
        except PyMongoError as exc:
            logger.error(f"Store failure during {operation}: {exc!r}")
            raise TransientStoreError(
                f"Could not {operation}, please try again",
                details={"operation": operation},
            ) from exc

    async def _load(self, conversation_id: str) -> Dict[str, Any]:
        async with self._store("load conversation"):
            conversation = await self._conversation_repo.get(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found", details={"conversation_id": conversation_id})
        return conversation

    def _authorize(self, caller: CurrentUser, conversation: Mapping[str, Any], action: str) -> None:
        if caller.is_admin or caller.id in participant_ids(conversation):
            return
        logger.warning(f"User {caller.id} denied {action} on conversation {conversation.get('_id')}")
        raise ForbiddenError(f"Not authorized to {action} this conversation")

    async def _present(self, conversation: Mapping[str, Any]) -> ConversationOut:
        async with self._store("resolve participants"):
            users = await self._user_repo.get_users_by_ids(participant_ids(conversation))
        return ConversationOut.from_document(conversation, users)

    async def _support_admin(self) -> dict:
        async with self._store("find support admin"):
            if self._support_admin_id:
                admin = await self._user_repo.get_user_by_id(self._support_admin_id)
                admins = [admin] if admin and admin.get("role") == Role.ADMIN.value else []
            else:
                admins = await self._user_repo.find_admins(limit=2)
        if not admins:
            raise NotFoundError("Admin not found")
        if len(admins) > 1:
            logger.debug(f"Several admins exist, routing support chat to the oldest ({admins[0]['_id']})")
        return admins[0]

    async def get_or_create_support_conversation(self, caller: CurrentUser) -> ConversationOut:
        if caller.role is not Role.USER:
            raise ForbiddenError("Only users can open a support conversation")
        admin = await self._support_admin()
        async with self._store("open support conversation"):
            conversation = await self._conversation_repo.find_by_participants(caller.id, admin["_id"])
            if conversation is None:
                try:
                    conversation = await self._conversation_repo.create(caller.id, admin["_id"])
                except ConflictError:
                    # a concurrent request created it first
                    conversation = await self._conversation_repo.find_by_participants(caller.id, admin["_id"])
            elif not conversation.get("is_active", True):
                await self._conversation_repo.reactivate(conversation["_id"])
                conversation = await self._conversation_repo.get(conversation["_id"])
        return await self._present(conversation)

    async def list_conversations(self, caller: CurrentUser, page: int = 1, size: int = 10) -> ConversationPage:
        if not caller.is_admin:
            raise ForbiddenError("Only admins can list conversations")
        if page < 1 or not 1 <= size <= MAX_PAGE_SIZE:
            raise ValidationError(
                "Invalid pagination",
                details={"page": ["must be >= 1"], "limit": [f"must be between 1 and {MAX_PAGE_SIZE}"]},
            )
        async with self._store("list conversations"):
            items, total = await self._conversation_repo.list_active(page, size)
            ids = {uid for item in items for uid in participant_ids(item)}
            users = await self._user_repo.get_users_by_ids(ids)
        pages = ceil(total / size)
        return ConversationPage(
            items=[ConversationOut.from_document(item, users) for item in items],
            pagination=Pagination(
                current_page=page,
                total_pages=pages,
                total_items=total,
                has_next=page < pages,
                has_prev=page > 1,
            ),
        )

    async def get_conversation(self, caller: CurrentUser, conversation_id: str) -> ConversationOut:
        conversation = await self._load(conversation_id)
        self._authorize(caller, conversation, "view")
        # viewing acknowledges everything addressed to the caller's role
        flipped = await self._acknowledge(caller, conversation)
        if flipped or (conversation.get("unread_count") or {}).get(caller.role.value):
            conversation = await self._load(conversation_id)
        return await self._present(conversation)

    async def send_message(
        self,
        caller: CurrentUser,
        conversation_id: str,
        content: Optional[str],
        message_type: str = MessageType.TEXT.value,
        attachment: Optional[Attachment] = None,
        client_message_id: Optional[str] = None,
    ) -> MessageOut:
        content, message_type = self._validate_message(content, message_type, attachment)
        conversation = await self._load(conversation_id)
        self._authorize(caller, conversation, "send messages in")

        message = {
            "_id": ObjectId(),
            "sender": caller.id,
            "sender_role": caller.role.value,
            "content": content,
            "message_type": message_type,
            "attachment": attachment.model_dump() if attachment else None,
            "is_read": False,
            "read_at": None,
            "client_message_id": client_message_id,
        }
        async with self._store("send message"):
            persisted = await self._conversation_repo.append_message(conversation["_id"], message)
        out = MessageOut.from_document(persisted)
        if persisted["_id"] != message["_id"]:
            # replayed send, the original was already delivered
            return out

        recipients = [uid for uid in participant_ids(conversation) if uid != caller.id]
        groups = [] if caller.is_admin else [ADMIN_BROADCAST_GROUP]
        await self._delivery.deliver(
            recipients,
            {
                "type": MESSAGE_RECEIVED,
                "data": {
                    "conversationId": str(conversation["_id"]),
                    "message": out.model_dump(mode="json", by_alias=True),
                    "senderId": caller.id,
                },
            },
            groups=groups,
        )
        return out

    async def mark_read(self, caller: CurrentUser, conversation_id: str) -> int:
        conversation = await self._load(conversation_id)
        self._authorize(caller, conversation, "access")
        return await self._acknowledge(caller, conversation)

    async def get_unread_count(self, caller: CurrentUser) -> int:
        async with self._store("count unread messages"):
            if caller.is_admin:
                return await self._conversation_repo.sum_unread(Role.ADMIN)
            return await self._conversation_repo.sum_unread(Role.USER, participant_id=caller.id)

    async def delete_conversation(self, caller: CurrentUser, conversation_id: str) -> None:
        if not caller.is_admin:
            raise ForbiddenError("Only admins can delete conversations")
        async with self._store("delete conversation"):
            deleted = await self._conversation_repo.soft_delete(conversation_id)
        if not deleted:
            raise NotFoundError("Conversation not found", details={"conversation_id": conversation_id})
        logger.info(f"Admin {caller.id} soft-deleted conversation {conversation_id}")

    async def counterparts(self, caller: CurrentUser, conversation_id: str) -> List[str]:
        """Participants other than the caller, after checking the caller may see the conversation."""
        conversation = await self._load(conversation_id)
        self._authorize(caller, conversation, "access")
        return [uid for uid in participant_ids(conversation) if uid != caller.id]

    async def _acknowledge(self, caller: CurrentUser, conversation: Mapping[str, Any]) -> int:
        now = datetime.now(timezone.utc)
        async with self._store("mark messages as read"):
            flipped = await self._conversation_repo.set_read_receipts(conversation["_id"], caller.role, now)
        if flipped:
            recipients = [uid for uid in participant_ids(conversation) if uid != caller.id]
            await self._delivery.deliver(
                recipients,
                {
                    "type": MESSAGES_READ,
                    "data": {
                        "conversationId": str(conversation["_id"]),
                        "readerId": caller.id,
                        "readerRole": caller.role.value,
                        "count": flipped,
                        "readAt": now.isoformat(),
                    },
                },
            )
        return flipped

    @staticmethod
    def _validate_message(content: Optional[str], message_type: Optional[str], attachment: Optional[Attachment]):
        errors: Dict[str, List[str]] = {}
        content = (content or "").strip()
        if not 1 <= len(content) <= MAX_MESSAGE_LENGTH:
            errors["content"] = [f"Message must be between 1 and {MAX_MESSAGE_LENGTH} characters"]
        message_type = message_type or MessageType.TEXT.value
        try:
            kind = MessageType(message_type)
        except ValueError:
            errors["messageType"] = ["Invalid message type"]
        else:
            if kind is MessageType.TEXT and attachment is not None:
                errors["attachment"] = ["Text messages cannot carry an attachment"]
            elif kind is not MessageType.TEXT and attachment is None:
                errors["attachment"] = [f"{kind.value} messages require an attachment"]
        if errors:
            raise ValidationError("Validation failed", details=errors)
        return content, message_type
