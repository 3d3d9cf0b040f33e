"""
MongoDB access

The connection is configured from DATABASE_URL / DATABASE_NAME. When
DATABASE_URL is not set, ``db`` is None and the API reports the database as
unavailable.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "tms")

RUNS = "testrun"

db = None
if DATABASE_URL:
    _client = MongoClient(DATABASE_URL, tz_aware=True)
    db = _client[DATABASE_NAME]
    logger.info(f"Using MongoDB database {DATABASE_NAME!r}")


class DatabaseUnavailable(RuntimeError):
    pass


def _require_db():
    if db is None:
        raise DatabaseUnavailable("Database not configured (DATABASE_URL is not set)")
    return db


def create_document(collection_name: str, data: Dict[str, Any]) -> str:
    """Insert one document and return its id as a string."""
    database = _require_db()
    data = dict(data)
    data.setdefault("created_at", datetime.now(timezone.utc))
    result = database[collection_name].insert_one(data)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  sort: Optional[List[Any]] = None, limit: Optional[int] = None,
                  projection: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    database = _require_db()
    cursor = database[collection_name].find(filter_dict or {}, projection)
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(int(limit))
    return list(cursor)


def get_document(collection_name: str, doc_id: str) -> Optional[Dict[str, Any]]:
    database = _require_db()
    return database[collection_name].find_one({"_id": ObjectId(doc_id)})


def is_valid_id(doc_id: str) -> bool:
    try:
        ObjectId(doc_id)
    except (InvalidId, TypeError):
        return False
    return True


# Runs

def insert_run(run_doc: Dict[str, Any]) -> str:
    # run, suites and tests live in one document, so the insert is atomic
    return create_document(RUNS, run_doc)


def find_runs(since: Optional[datetime] = None, newest_first: bool = False,
              with_suites: bool = True, with_tests: bool = False) -> List[Dict[str, Any]]:
    """Runs started at or after ``since``, ordered by start time."""
    filt: Dict[str, Any] = {}
    if since is not None:
        filt["started_at"] = {"$gte": since}
    projection: Optional[Dict[str, Any]] = None
    if not with_suites:
        projection = {"suites": 0}
    elif not with_tests:
        projection = {"suites.tests": 0}
    order = DESCENDING if newest_first else ASCENDING
    return get_documents(RUNS, filt, sort=[("started_at", order)], projection=projection)


def find_run(run_id: str) -> Optional[Dict[str, Any]]:
    return get_document(RUNS, run_id)
