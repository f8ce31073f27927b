from datetime import datetime
from enum import Enum
from typing import Optional, TypedDict


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"


class AttachmentDocument(TypedDict, total=False):
    filename: str
    original_name: str
    mimetype: str
    size: int
    url: str


class MessageDocument(TypedDict, total=False):
    _id: object
    sender: str
    # role of the author at send time; read receipts and counters key on it
    sender_role: str
    content: str
    message_type: str
    attachment: Optional[AttachmentDocument]
    is_read: bool
    read_at: Optional[datetime]
    sent_at: datetime
    # client ack / idempotency token
    client_message_id: Optional[str]
