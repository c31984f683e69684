"""
MongoDB document store

`db` is the configured database handle (None when DATABASE_URL/DATABASE_NAME
are missing). `store` wraps it in `MongoDocumentStore`, the collaborator the
routes, the feeds, the dashboard and the auth service talk to.
"""

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import DuplicateKeyError, OperationFailure, PyMongoError

from config import settings
from exceptions import ConfigurationError, QueryError, QueryPreconditionError, StudySyncError, WriteError
from logging_config import logger
from schemas import ACCOUNTS, ANSWERS, DOUBTS, NOTES, REVOKED_TOKENS

CHANGE_STREAMS_UNSUPPORTED = 40573

# OperationFailure codes that mean "the server needs setup before this query can run"
PRECONDITION_CODES = {
    27,     # IndexNotFound
    291,    # NoQueryExecutionPlans (notablescan and no usable index)
    CHANGE_STREAMS_UNSUPPORTED,
}

REPLICA_SET_HELP = (
    "Live updates need MongoDB running as a replica set; this server is standalone. "
    "Start it with --replSet (a single-member replica set is enough) and refresh."
)

# Indexes the feeds, the answers list and the dashboard rely on
REQUIRED_INDEXES: Dict[str, List[List[Tuple[str, int]]]] = {
    DOUBTS: [
        [("created_at", DESCENDING)],
        [("author_id", ASCENDING), ("created_at", DESCENDING)],
    ],
    ANSWERS: [
        [("doubt_id", ASCENDING), ("created_at", ASCENDING)],
        [("author_id", ASCENDING), ("created_at", DESCENDING)],
    ],
    NOTES: [
        [("created_at", DESCENDING)],
        [("author_id", ASCENDING), ("created_at", DESCENDING)],
    ],
}

SnapshotCallback = Callable[[Optional[List[Dict[str, Any]]], Optional[StudySyncError]], None]


@dataclass(frozen=True)
class QuerySpec:
    """A filtered, ordered read against one collection."""
    collection: str
    filters: Tuple[Tuple[str, Any], ...] = ()
    order_by: Optional[Tuple[str, str]] = None  # (field, "asc" | "desc")
    limit: Optional[int] = None

    def mongo_filter(self) -> Dict[str, Any]:
        return {name: value for name, value in self.filters}

    def mongo_sort(self) -> Optional[List[Tuple[str, int]]]:
        if not self.order_by:
            return None
        name, direction = self.order_by
        return [(name, DESCENDING if direction == "desc" else ASCENDING)]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _doc_key(doc_id: str) -> Union[ObjectId, str]:
    return ObjectId(doc_id) if ObjectId.is_valid(doc_id) else doc_id


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    d = dict(doc)
    d["id"] = str(d.pop("_id"))
    return d


def translate_read_error(exc: PyMongoError, collection: str) -> QueryError:
    if isinstance(exc, OperationFailure) and exc.code in PRECONDITION_CODES:
        if exc.code == CHANGE_STREAMS_UNSUPPORTED:
            return QueryPreconditionError(collection, reason=str(exc), message=REPLICA_SET_HELP)
        return QueryPreconditionError(collection, reason=str(exc))
    return QueryError(f"An unexpected database error occurred: {exc}", collection=collection)


class MongoDocumentStore:
    """
    Document store over a pymongo Database.

    All methods are blocking; async callers run them in a worker thread.
    """

    def __init__(self, database=None, max_await_ms: Optional[int] = None):
        self.db = database
        self.max_await_ms = max_await_ms or settings.CHANGE_STREAM_MAX_AWAIT_MS

    def _collection(self, name: str):
        if self.db is None:
            raise ConfigurationError()
        return self.db[name]

    # ----------------------- writes -----------------------

    def create(self, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
        """Insert a document, stamping created_at/updated_at. Returns its id."""
        collection = self._collection(collection_name)
        if isinstance(data, BaseModel):
            data = data.model_dump(mode="json", exclude_none=True)
        doc = dict(data)
        now = _now()
        doc["created_at"] = now
        doc["updated_at"] = now
        started = time.monotonic()
        try:
            result = collection.insert_one(doc)
        except PyMongoError as e:
            raise WriteError(f"Could not save to '{collection_name}': {e}", collection=collection_name) from e
        logger.log_db_query("insert", collection_name, (time.monotonic() - started) * 1000, 1)
        return str(result.inserted_id)

    def set(self, collection_name: str, doc_id: str, data: Dict[str, Any]) -> str:
        """Create a document under a known key (users/{uid})."""
        collection = self._collection(collection_name)
        now = _now()
        doc = {**data, "_id": doc_id, "created_at": now, "updated_at": now}
        try:
            collection.insert_one(doc)
        except DuplicateKeyError as e:
            raise WriteError(f"'{collection_name}/{doc_id}' already exists", collection=collection_name) from e
        except PyMongoError as e:
            raise WriteError(f"Could not save to '{collection_name}': {e}", collection=collection_name) from e
        return doc_id

    def update(self, collection_name: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """Partial update of an existing document."""
        collection = self._collection(collection_name)
        try:
            result = collection.update_one(
                {"_id": _doc_key(doc_id)},
                {"$set": {**fields, "updated_at": _now()}},
            )
        except PyMongoError as e:
            raise WriteError(f"Could not update '{collection_name}/{doc_id}': {e}", collection=collection_name) from e
        if result.matched_count == 0:
            raise WriteError(f"'{collection_name}/{doc_id}' does not exist", collection=collection_name)

    # ----------------------- reads -----------------------

    def get(self, collection_name: str, doc_id: str) -> Optional[Dict[str, Any]]:
        collection = self._collection(collection_name)
        try:
            doc = collection.find_one({"_id": _doc_key(doc_id)})
        except PyMongoError as e:
            raise translate_read_error(e, collection_name) from e
        return serialize_doc(doc) if doc else None

    def query(self, spec: QuerySpec) -> List[Dict[str, Any]]:
        collection = self._collection(spec.collection)
        started = time.monotonic()
        try:
            cursor = collection.find(spec.mongo_filter())
            sort = spec.mongo_sort()
            if sort:
                cursor = cursor.sort(sort)
            if spec.limit:
                cursor = cursor.limit(spec.limit)
            docs = [serialize_doc(d) for d in cursor]
        except PyMongoError as e:
            raise translate_read_error(e, spec.collection) from e
        logger.log_db_query("find", spec.collection, (time.monotonic() - started) * 1000, len(docs))
        return docs

    def subscribe_query(self, spec: QuerySpec, callback: SnapshotCallback) -> Callable[[], None]:
        """
        Deliver the full result set of `spec` now and after every change to
        the collection, from a background thread.

        The callback gets (docs, None) on success or (None, error) once on
        failure, after which the subscription ends. Returns a cancel function.
        """
        collection = self._collection(spec.collection)
        stop = threading.Event()

        def run():
            try:
                with collection.watch(max_await_time_ms=self.max_await_ms) as stream:
                    # the stream is open before the first read, so no change is missed
                    callback(self.query(spec), None)
                    while not stop.is_set() and stream.alive:
                        change = stream.try_next()
                        if change is None or stop.is_set():
                            continue
                        callback(self.query(spec), None)
                if not stop.is_set():
                    # invalidated (collection dropped or renamed) or closed by the server
                    callback(None, QueryError(
                        f"The live query on '{spec.collection}' was closed by the server",
                        collection=spec.collection,
                    ))
            except QueryError as e:
                if not stop.is_set():
                    callback(None, e)
            except PyMongoError as e:
                if not stop.is_set():
                    callback(None, translate_read_error(e, spec.collection))

        thread = threading.Thread(target=run, name=f"live-query-{spec.collection}", daemon=True)
        thread.start()
        return stop.set

    # ----------------------- setup -----------------------

    def ensure_indexes(self) -> None:
        self._collection(ACCOUNTS).create_index([("email", ASCENDING)], unique=True)
        # revocations are only needed until the token itself expires
        self._collection(REVOKED_TOKENS).create_index("expires_at", expireAfterSeconds=0)
        for name, indexes in REQUIRED_INDEXES.items():
            for keys in indexes:
                self._collection(name).create_index(keys)
        logger.info("Database indexes ensured")


def _connect():
    if not settings.is_database_configured:
        logger.warning(
            "Database configuration is missing (DATABASE_URL / DATABASE_NAME). "
            "All data operations will fail until it is set."
        )
        return None
    client = MongoClient(settings.DATABASE_URL, tz_aware=True)
    return client[settings.DATABASE_NAME]


db = _connect()
store = MongoDocumentStore(db)
