from typing import Optional

from pymongo import MongoClient
from pymongo.database import Database

from settings import Settings


def get_db(settings: Settings) -> Optional[Database]:
    """Return the configured Mongo database, or None when running in-memory."""
    if not settings.database_url:
        return None
    client = MongoClient(settings.database_url, tz_aware=True)
    return client[settings.database_name]
