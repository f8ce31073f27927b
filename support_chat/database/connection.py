from typing import Optional

from loguru import logger
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from support_chat.config import MONGO_TIMEOUT_MS, MONGODB_DB, MONGODB_URL


_client: Optional[AsyncIOMotorClient] = None


async def connect_to_mongo(url: str = MONGODB_URL) -> None:
    global _client
    _client = AsyncIOMotorClient(
        url,
        tz_aware=True,
        serverSelectionTimeoutMS=MONGO_TIMEOUT_MS,
        socketTimeoutMS=MONGO_TIMEOUT_MS,
        # a failed append is reported to the client, which owns the retry decision
        retryWrites=False,
    )
    logger.info(f"Connected to MongoDB database '{MONGODB_DB}'")


async def close_mongo_connection() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None
        logger.info("MongoDB connection closed")


def get_database() -> AsyncIOMotorDatabase:
    if _client is None:
        raise RuntimeError("MongoDB client is not connected")
    return _client[MONGODB_DB]


async def mongo_db_dependency() -> AsyncIOMotorDatabase:
    return get_database()
