"""
backend/kickoff/database.py

Purpose:
    MongoDB connection bootstrap. Collection layout and indexes are owned by
    the store classes; this module only opens and closes the client and asks
    each store to ensure its indexes.

Dependencies:
    - motor.motor_asyncio
    - kickoff.config
"""

import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from kickoff.config import settings

client: AsyncIOMotorClient = None
db: AsyncIOMotorDatabase = None

logger = logging.getLogger("kickoff.database")


async def connect_db() -> AsyncIOMotorDatabase:
    global client, db
    client = AsyncIOMotorClient(
        settings.MONGO_URI,
        maxPoolSize=25,
        minPoolSize=5,
        tz_aware=True,
    )
    db = client[settings.MONGO_DB]
    logger.info("Connected to MongoDB database %s", settings.MONGO_DB)
    return db


async def close_db() -> None:
    global client, db
    if client:
        client.close()
    client = None
    db = None


async def ensure_indexes(*stores) -> None:
    for store in stores:
        await store.ensure_indexes()
    logger.info("Indexes ensured for %d stores", len(stores))
