"""
MongoDB access for the quiz attempt service.

The connection is configured from DATABASE_URL and DATABASE_NAME. When either
is missing `db` stays None and the API reports the database as not configured.
"""

import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL, tz_aware=True)
    db = client[DATABASE_NAME]


def get_db():
    """FastAPI dependency returning the configured database handle."""
    return db


def create_document(database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document with created_at/updated_at stamps and return its id as a string"""
    if database is None:
        raise RuntimeError("Database not configured")

    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)

    now = datetime.now(timezone.utc)
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now

    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  sort: Optional[List] = None, skip: int = 0, limit: Optional[int] = None) -> List[dict]:
    if database is None:
        raise RuntimeError("Database not configured")

    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database):
    """Create the indexes the attempt ledger relies on."""
    if database is None:
        return
    # Two concurrent starts cannot both claim the same attempt number
    database["attempt"].create_index(
        [("user_id", ASCENDING), ("quiz_id", ASCENDING), ("attempt_number", ASCENDING)],
        unique=True,
        name="attempt_user_quiz_number",
    )
    database["progress"].create_index(
        [("user_id", ASCENDING), ("course_id", ASCENDING)],
        unique=True,
        name="progress_user_course",
    )
    database["question"].create_index([("quiz_id", ASCENDING), ("order", ASCENDING)])
    logger.info("Database indexes ensured")
