import logging
import os
from datetime import datetime

from dotenv import load_dotenv
from pymongo import ASCENDING, DESCENDING, MongoClient

load_dotenv()

logger = logging.getLogger("setup_database")

DEFAULT_BANNER_MESSAGES = [
    {"text": "FREE SHIPPING ON ORDERS OVER ₹999", "icon": "🚚", "order": 1},
    {"text": "SUMMER SALE - UP TO 50% OFF", "icon": "🔥", "order": 2},
    {"text": "NEW ARRIVALS EVERY WEEK", "icon": "✨", "order": 3},
]


def ensure_indexes(db) -> None:
    db.users.create_index([("email", ASCENDING)], unique=True)
    db.admins.create_index([("email", ASCENDING)], unique=True)
    db.orders.create_index([("orderId", ASCENDING)], unique=True)
    db.orders.create_index([("userId", ASCENDING), ("createdAt", DESCENDING)])
    db.bannerMessages.create_index([("isActive", ASCENDING), ("order", ASCENDING)])
    db.heroSlides.create_index([("isActive", ASCENDING), ("order", ASCENDING)])
    logger.info("Indexes ensured")


def seed_banner_messages(db) -> int:
    """Insert the default banner messages when none exist. Returns the number inserted."""
    if db.bannerMessages.count_documents({}) > 0:
        logger.info("Banner messages already present, skipping seed")
        return 0

    now = datetime.utcnow()
    documents = [
        {**message, "isActive": True, "createdAt": now, "updatedAt": now}
        for message in DEFAULT_BANNER_MESSAGES
    ]
    db.bannerMessages.insert_many(documents)
    logger.info("Seeded %d banner messages", len(documents))
    return len(documents)


def get_database(client: MongoClient):
    database = client.get_default_database(default="hex")
    return database


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    mongo_uri = (
        os.getenv("MONGO_URI")
        or os.getenv("MONGODB_URI")
        or "mongodb://localhost:27017/hex"
    )
    client = MongoClient(mongo_uri)
    try:
        db = get_database(client)
        ensure_indexes(db)
        seed_banner_messages(db)
    finally:
        client.close()
