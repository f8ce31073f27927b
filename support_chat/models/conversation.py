from datetime import datetime
from typing import List, Optional, TypedDict

from support_chat.models.message import MessageDocument
from support_chat.models.user import Role


class ParticipantEntry(TypedDict):
    user_id: str
    role: Role


class LastMessage(TypedDict):
    content: str
    sender: str
    sent_at: datetime


class UnreadCount(TypedDict):
    # each counter belongs to a role and counts unread messages from the other role
    user: int
    admin: int


class ConversationDocument(TypedDict, total=False):
    _id: object
    participants: List[ParticipantEntry]
    # "<id>:<id>" of the sorted pair, unique in the collection
    participant_key: str
    messages: List[MessageDocument]
    last_message: Optional[LastMessage]
    unread_count: UnreadCount
    is_active: bool
    created_at: datetime
    updated_at: datetime


def participant_key(user_a: str, user_b: str) -> str:
    return ":".join(sorted([str(user_a), str(user_b)]))
