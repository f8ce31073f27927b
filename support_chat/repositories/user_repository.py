from typing import Dict, Iterable, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from support_chat.models.user import Role


PUBLIC_FIELDS = {"name": 1, "email": 1, "avatar": 1, "role": 1}


def _object_ids(ids: Iterable[str]) -> List[ObjectId]:
    oids = []
    for value in ids:
        try:
            oids.append(ObjectId(str(value)))
        except (InvalidId, TypeError):
            continue
    return oids


class UserRepository:
    """Read-only view of the user directory owned by the auth service."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def get_user_by_id(self, user_id: str) -> Optional[dict]:
        oids = _object_ids([user_id])
        if not oids:
            return None
        user = await self._collection.find_one({"_id": oids[0]}, projection=PUBLIC_FIELDS)
        if user:
            user["_id"] = str(user["_id"])
        return user

    async def get_users_by_ids(self, user_ids: Iterable[str]) -> Dict[str, dict]:
        oids = _object_ids(set(user_ids))
        if not oids:
            return {}
        cursor = self._collection.find({"_id": {"$in": oids}}, projection=PUBLIC_FIELDS)
        users = await cursor.to_list(length=len(oids))
        return {str(u["_id"]): {**u, "_id": str(u["_id"])} for u in users}

    async def find_admins(self, limit: int = 2) -> List[dict]:
        # ObjectIds sort by creation time, so the first entry is the oldest admin
        cursor = self._collection.find({"role": Role.ADMIN.value}, projection=PUBLIC_FIELDS).sort("_id", ASCENDING).limit(limit)
        admins = await cursor.to_list(length=limit)
        for admin in admins:
            admin["_id"] = str(admin["_id"])
        return admins
