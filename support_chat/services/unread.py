"""
Unread counters and read receipts.

Pure functions over a conversation document. Each role owns one counter in
``unread_count``; it counts the messages authored by the *other* role whose
``is_read`` flag is still false. The store applies the same selections through
atomic updates (``CounterDelta.field`` for ``$inc``, ``unread_array_filter`` for
``array_filters``), and the in-memory ``apply_*`` helpers are used to repair
documents and in tests.
"""

from datetime import datetime
from typing import Any, Dict, List, Mapping, NamedTuple, Union

from support_chat.models.user import Role


ARRAY_FILTER_ID = "m"


class CounterDelta(NamedTuple):
    role: Role
    amount: int = 1

    @property
    def field(self) -> str:
        return f"unread_count.{self.role.value}"


class ReadTransition(NamedTuple):
    indexes: List[int]
    new_counter: int = 0


def _role(value: Union[Role, str]) -> Role:
    return value if isinstance(value, Role) else Role(value)


def receiver_role(sender_role: Union[Role, str]) -> Role:
    return _role(sender_role).other


def on_append(conversation: Mapping[str, Any], sender_role: Union[Role, str]) -> CounterDelta:
    # the sender's own counter never moves on append
    return CounterDelta(receiver_role(sender_role), 1)


def on_mark_read(conversation: Mapping[str, Any], reader_role: Union[Role, str]) -> ReadTransition:
    author = _role(reader_role).other.value
    indexes = [
        i
        for i, message in enumerate(conversation.get("messages") or [])
        if message.get("sender_role") == author and not message.get("is_read")
    ]
    return ReadTransition(indexes=indexes, new_counter=0)


def unread_array_filter(reader_role: Union[Role, str]) -> Dict[str, Any]:
    author = _role(reader_role).other.value
    return {
        f"{ARRAY_FILTER_ID}.sender_role": author,
        f"{ARRAY_FILTER_ID}.is_read": False,
    }


def count_unread(conversation: Mapping[str, Any], role: Union[Role, str]) -> int:
    return len(on_mark_read(conversation, role).indexes)


def counters_consistent(conversation: Mapping[str, Any]) -> bool:
    counters = conversation.get("unread_count") or {}
    return all(counters.get(role.value, 0) == count_unread(conversation, role) for role in Role)


def empty_counters() -> Dict[str, int]:
    return {role.value: 0 for role in Role}


def apply_append(conversation: Dict[str, Any], message: Dict[str, Any]) -> CounterDelta:
    delta = on_append(conversation, message["sender_role"])
    conversation.setdefault("messages", []).append(message)
    conversation["last_message"] = {
        "content": message["content"],
        "sender": message["sender"],
        "sent_at": message["sent_at"],
    }
    previous = conversation.get("updated_at")
    conversation["updated_at"] = max(previous, message["sent_at"]) if previous else message["sent_at"]
    counters = conversation.setdefault("unread_count", empty_counters())
    counters[delta.role.value] = counters.get(delta.role.value, 0) + delta.amount
    return delta


def apply_mark_read(conversation: Dict[str, Any], reader_role: Union[Role, str], now: datetime) -> int:
    transition = on_mark_read(conversation, reader_role)
    messages = conversation.get("messages") or []
    for i in transition.indexes:
        messages[i]["is_read"] = True
        messages[i]["read_at"] = now
    counters = conversation.setdefault("unread_count", empty_counters())
    counters[_role(reader_role).value] = transition.new_counter
    if transition.indexes:
        conversation["updated_at"] = now
    return len(transition.indexes)
