from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from support_chat.models.user import Role
from support_chat.schemas.user import ParticipantPublic


class CamelModel(BaseModel):

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Attachment(CamelModel):

    filename: str
    original_name: Optional[str] = None
    mimetype: str
    size: int = Field(ge=0)
    url: str


class SendMessageRequest(CamelModel):
    # bounds are enforced by the service so every entry point reports them the same way
    content: str
    message_type: str = "text"
    attachment: Optional[Attachment] = None
    client_message_id: Optional[str] = Field(default=None, max_length=128)


class MessageOut(CamelModel):

    id: str
    sender: str
    sender_role: Role
    content: str
    message_type: str
    attachment: Optional[Attachment] = None
    is_read: bool = False
    read_at: Optional[datetime] = None
    sent_at: datetime
    client_message_id: Optional[str] = None

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "MessageOut":
        return cls(
            id=str(doc["_id"]),
            sender=str(doc["sender"]),
            sender_role=doc["sender_role"],
            content=doc["content"],
            message_type=doc.get("message_type", "text"),
            attachment=doc.get("attachment"),
            is_read=doc.get("is_read", False),
            read_at=doc.get("read_at"),
            sent_at=doc["sent_at"],
            client_message_id=doc.get("client_message_id"),
        )


class LastMessageOut(CamelModel):

    content: str
    sender: str
    sent_at: datetime


class UnreadCountOut(CamelModel):

    user: int = 0
    admin: int = 0


class ConversationOut(CamelModel):

    id: str
    participants: List[ParticipantPublic]
    messages: Optional[List[MessageOut]] = None
    last_message: Optional[LastMessageOut] = None
    unread_count: UnreadCountOut
    is_active: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_document(cls, doc: Mapping[str, Any], users: Optional[Mapping[str, dict]] = None) -> "ConversationOut":
        users = users or {}
        participants = []
        for entry in doc.get("participants") or []:
            info = users.get(entry["user_id"], {})
            participants.append(
                ParticipantPublic(
                    id=entry["user_id"],
                    role=entry["role"],
                    name=info.get("name"),
                    email=info.get("email"),
                    avatar=info.get("avatar"),
                )
            )
        messages = None
        if "messages" in doc:
            messages = [MessageOut.from_document(m) for m in doc["messages"]]
        last = doc.get("last_message")
        return cls(
            id=str(doc["_id"]),
            participants=participants,
            messages=messages,
            last_message=LastMessageOut(**last) if last else None,
            unread_count=UnreadCountOut(**(doc.get("unread_count") or {})),
            is_active=doc.get("is_active", True),
            created_at=doc["created_at"],
            updated_at=doc["updated_at"],
        )


class Pagination(CamelModel):

    current_page: int
    total_pages: int
    total_items: int
    has_next: bool
    has_prev: bool


class ConversationPage(CamelModel):

    items: List[ConversationOut]
    pagination: Pagination


class UnreadTotal(CamelModel):

    unread_count: int


class MarkReadResult(CamelModel):

    updated: int


class WsInbound(BaseModel):
    """Client -> server frame."""

    type: str
    data: Dict[str, Any] = {}
