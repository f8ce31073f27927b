from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from loguru import logger
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from support_chat.exceptions import ConflictError, NotFoundError, ValidationError
from support_chat.models.conversation import participant_key
from support_chat.models.user import Role
from support_chat.services import unread


APPEND_ATTEMPTS = 3

def to_object_id(value) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFoundError("Conversation not found", details={"conversation_id": str(value)})


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("participant_key", ASCENDING)], unique=True)
        await self.collection.create_index([("participants.user_id", ASCENDING)])
        await self.collection.create_index([("is_active", ASCENDING), ("updated_at", DESCENDING)])

    async def get(self, conversation_id) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one({"_id": to_object_id(conversation_id)})

    async def find_by_participants(self, user_a: str, user_b: str) -> Optional[Dict[str, Any]]:
        return await self.collection.find_one({"participant_key": participant_key(user_a, user_b)})

    async def create(self, user_id: str, admin_id: str) -> Dict[str, Any]:
        if str(user_id) == str(admin_id):
            raise ValidationError(
                "A conversation needs two distinct participants",
                details={"participants": ["user and admin must differ"]},
            )
        now = datetime.now(timezone.utc)
        doc: Dict[str, Any] = {
            "participants": [
                {"user_id": str(user_id), "role": Role.USER.value},
                {"user_id": str(admin_id), "role": Role.ADMIN.value},
            ],
            "participant_key": participant_key(user_id, admin_id),
            "messages": [],
            "last_message": None,
            "unread_count": unread.empty_counters(),
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        }
        try:
            result = await self.collection.insert_one(doc)
        except DuplicateKeyError:
            raise ConflictError(
                "Conversation already exists for this pair",
                details={"participants": [str(user_id), str(admin_id)]},
            )
        doc["_id"] = result.inserted_id
        logger.info(f"Created conversation {doc['_id']} for user {user_id} with admin {admin_id}")
        return doc

    async def append_message(self, conversation_id, message: Dict[str, Any]) -> Dict[str, Any]:
        """Push ``message``, refresh ``last_message`` and bump the receiver's counter in one update.

        ``sent_at`` is stamped here, right before the write, and the update only
        matches while the stamp is not older than the stored ``last_message``, so
        timestamps never decrease along the log. A message carrying a
        ``client_message_id`` that is already in the log is not appended again;
        the persisted one is returned instead.
        """
        oid = to_object_id(conversation_id)
        message = dict(message)
        message.setdefault("_id", ObjectId())
        message.setdefault("is_read", False)
        message.setdefault("read_at", None)
        delta = unread.on_append({}, message["sender_role"])
        client_message_id = message.get("client_message_id")
        sent_at = datetime.now(timezone.utc)

        for _ in range(APPEND_ATTEMPTS):
            message["sent_at"] = sent_at
            query: Dict[str, Any] = {
                "_id": oid,
                "is_active": True,
                "$or": [
                    {"last_message.sent_at": {"$exists": False}},
                    {"last_message.sent_at": {"$lte": sent_at}},
                ],
            }
            if client_message_id:
                query["messages.client_message_id"] = {"$ne": client_message_id}

            updated = await self.collection.find_one_and_update(
                query,
                {
                    "$push": {"messages": message},
                    "$set": {
                        "last_message": {
                            "content": message["content"],
                            "sender": message["sender"],
                            "sent_at": sent_at,
                        },
                    },
                    "$max": {"updated_at": sent_at},
                    "$inc": {delta.field: delta.amount},
                },
                projection={"_id": 1},
                return_document=ReturnDocument.AFTER,
            )
            if updated is not None:
                return message

            existing = await self.collection.find_one(
                {"_id": oid},
                projection={"is_active": 1, "messages": 1, "last_message.sent_at": 1},
            )
            if existing is None or not existing.get("is_active", False):
                raise NotFoundError("Conversation not found", details={"conversation_id": str(oid)})
            for stored in existing.get("messages") or []:
                if client_message_id and stored.get("client_message_id") == client_message_id:
                    logger.info(f"Duplicate send {client_message_id} in conversation {oid}, returning stored message")
                    return stored
            # a concurrent append landed with a later stamp
            last = (existing.get("last_message") or {}).get("sent_at")
            sent_at = max(datetime.now(timezone.utc), last) if last else datetime.now(timezone.utc)

        logger.warning(f"Gave up appending to conversation {oid} after {APPEND_ATTEMPTS} attempts")
        raise ConflictError("Conversation is busy, please retry", details={"conversation_id": str(oid)})

    async def set_read_receipts(self, conversation_id, reader_role: Role, now: Optional[datetime] = None) -> int:
        """Flip every unread message from the other role and zero the reader's counter atomically."""
        oid = to_object_id(conversation_id)
        now = now or datetime.now(timezone.utc)
        reader_role = Role(reader_role)
        author = reader_role.other.value
        field = unread.ARRAY_FILTER_ID
        before = await self.collection.find_one_and_update(
            {"_id": oid, "messages": {"$elemMatch": {"sender_role": author, "is_read": False}}},
            {
                "$set": {
                    f"messages.$[{field}].is_read": True,
                    f"messages.$[{field}].read_at": now,
                    f"unread_count.{reader_role.value}": 0,
                    "updated_at": now,
                }
            },
            array_filters=[unread.unread_array_filter(reader_role)],
            projection={"messages.sender_role": 1, "messages.is_read": 1},
            return_document=ReturnDocument.BEFORE,
        )
        if before is None:
            # nothing left to flip; a stale counter still has to go to zero
            await self.reset_unread(oid, reader_role)
            return 0
        return len(unread.on_mark_read(before, reader_role).indexes)

    async def reset_unread(self, conversation_id, role: Role) -> None:
        await self.collection.update_one(
            {"_id": to_object_id(conversation_id), f"unread_count.{Role(role).value}": {"$ne": 0}},
            {"$set": {f"unread_count.{Role(role).value}": 0}},
        )

    async def recount_unread(self, conversation_id) -> Dict[str, int]:
        """Rebuild both counters from the message log and return them."""
        oid = to_object_id(conversation_id)
        doc = await self.collection.find_one({"_id": oid}, projection={"messages.sender_role": 1, "messages.is_read": 1})
        if doc is None:
            raise NotFoundError("Conversation not found", details={"conversation_id": str(oid)})
        counters = {role.value: unread.count_unread(doc, role) for role in Role}
        await self.collection.update_one({"_id": oid}, {"$set": {"unread_count": counters}})
        return counters

    async def list_active(self, page: int = 1, size: int = 10) -> Tuple[List[Dict[str, Any]], int]:
        page = max(page, 1)
        query = {"is_active": True}
        total = await self.collection.count_documents(query)
        cursor = (
            self.collection.find(query, projection={"messages": 0})
            .sort([("updated_at", DESCENDING), ("_id", DESCENDING)])
            .skip((page - 1) * size)
            .limit(size)
        )
        items = await cursor.to_list(length=size)
        return items, total

    async def soft_delete(self, conversation_id) -> bool:
        result = await self.collection.update_one(
            {"_id": to_object_id(conversation_id)},
            {"$set": {"is_active": False, "updated_at": datetime.now(timezone.utc)}},
        )
        return bool(result.matched_count)

    async def reactivate(self, conversation_id) -> bool:
        result = await self.collection.update_one(
            {"_id": to_object_id(conversation_id), "is_active": False},
            {"$set": {"is_active": True, "updated_at": datetime.now(timezone.utc)}},
        )
        return bool(result.modified_count)

    async def sum_unread(self, role: Role, participant_id: Optional[str] = None) -> int:
        role = Role(role)
        match: Dict[str, Any] = {"is_active": True}
        if participant_id is not None:
            match["participants.user_id"] = str(participant_id)
        pipeline = [
            {"$match": match},
            {"$group": {"_id": None, "total": {"$sum": f"$unread_count.{role.value}"}}},
        ]
        rows = await self.collection.aggregate(pipeline).to_list(length=1)
        return int(rows[0]["total"]) if rows else 0
