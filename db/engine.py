import os
from functools import lru_cache

from pymongo import MongoClient
from dotenv import load_dotenv

load_dotenv()

MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017")
MONGO_DB = os.getenv("MONGO_DB", "hata")
ENV = os.getenv("ENV", "prod").lower()


@lru_cache(maxsize=None)
def get_mongo_client() -> MongoClient:
    # MongoClient is thread-safe and pools connections, one per process is enough
    return MongoClient(MONGO_URI)


def get_mongo_collection(collection_name: str):
    db = get_mongo_client()[MONGO_DB]
    return db[collection_name]


def collection_name(name: str) -> str:
    """Prefix a collection with the environment, e.g. ``PROD_predictions``."""
    return f"{ENV.upper()}_{name}"
