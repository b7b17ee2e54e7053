from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ASCENDING, MongoClient
from pymongo.errors import BulkWriteError, PyMongoError

from ..domain.chat_models import Turn
from ..domain.errors import StoreError
from .chat_store import DEFAULT_CONVERSATION_ID, conversation_id_from_env, turn_to_record


logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


class MongoTurnStore:
    """Turn log kept in one MongoDB collection.

    Every document carries a ``conversation_id``. Documents written before the
    field existed have none and are treated as part of the default
    conversation, so an existing ``chat_history.messages`` collection can be
    reused as is.
    """

    kind = "mongo"

    def __init__(
        self,
        conversation_id: Optional[str] = None,
        *,
        client: Any = None,
        collection: Any = None,
        use_transactions: Optional[bool] = None,
    ) -> None:
        self.conversation_id = conversation_id or conversation_id_from_env()
        self._use_transactions = (
            _env_flag("CHATRELAY_MONGO_TRANSACTIONS") if use_transactions is None else use_transactions
        )
        if collection is None:
            if client is None:
                mongo_url = os.getenv("MONGO_URL", "mongodb://localhost:27017")
                client = MongoClient(mongo_url, serverSelectionTimeoutMS=2000, tz_aware=True)
            mongo_db = os.getenv("MONGO_DB", "chat_history")
            collection_name = os.getenv("CHATRELAY_MONGO_COLLECTION", "messages")
            collection = client[mongo_db][collection_name]
        self._client = client
        self._turns = collection
        try:
            self._turns.create_index([("conversation_id", ASCENDING), ("createdAt", ASCENDING)])
        except PyMongoError as exc:
            logger.warning("Could not ensure turn index: %s", exc)

    def _scope(self) -> Dict[str, Any]:
        if self.conversation_id == DEFAULT_CONVERSATION_ID:
            return {
                "$or": [
                    {"conversation_id": self.conversation_id},
                    {"conversation_id": {"$exists": False}},
                ]
            }
        return {"conversation_id": self.conversation_id}

    def _id_filter(self, turn_id: str) -> Optional[Dict[str, Any]]:
        if not ObjectId.is_valid(turn_id):
            return None
        return {"_id": ObjectId(turn_id), **self._scope()}

    def insert_turns(self, turns: List[Turn]) -> List[Turn]:
        docs = [turn_to_record(turn, self.conversation_id) for turn in turns]
        if not docs:
            return []
        if self._use_transactions and self._client is not None:
            self._insert_in_transaction(docs)
        else:
            self._insert_with_compensation(docs)
        return [Turn.from_record(doc) for doc in docs]

    def _insert_in_transaction(self, docs: List[Dict[str, Any]]) -> None:
        try:
            with self._client.start_session() as session:
                with session.start_transaction():
                    self._turns.insert_many(docs, ordered=True, session=session)
        except PyMongoError as exc:
            for doc in docs:
                doc.pop("_id", None)
            raise StoreError("Failed to save turns", cause=exc) from exc

    def _insert_with_compensation(self, docs: List[Dict[str, Any]]) -> None:
        try:
            self._turns.insert_many(docs, ordered=True)
        except BulkWriteError as exc:
            inserted = int((exc.details or {}).get("nInserted", 0))
            written = [doc["_id"] for doc in docs[:inserted] if "_id" in doc]
            if written:
                try:
                    self._turns.delete_many({"_id": {"$in": written}})
                except PyMongoError:
                    logger.error("Could not roll back %d partially saved turns", len(written), exc_info=True)
            raise StoreError("Failed to save turns as one batch", cause=exc) from exc
        except PyMongoError as exc:
            raise StoreError("Failed to save turns", cause=exc) from exc

    def list_turns(self) -> List[Turn]:
        try:
            cursor = self._turns.find(self._scope()).sort([("createdAt", ASCENDING), ("_id", ASCENDING)])
            return [Turn.from_record(doc) for doc in cursor]
        except PyMongoError as exc:
            raise StoreError("Failed to read chat history", cause=exc) from exc

    def get_turn(self, turn_id: str) -> Optional[Turn]:
        query = self._id_filter(turn_id)
        if query is None:
            return None
        try:
            doc = self._turns.find_one(query)
        except PyMongoError as exc:
            raise StoreError("Failed to read turn", cause=exc) from exc
        return Turn.from_record(doc) if doc else None

    def update_first_text(self, turn_id: str, text: str) -> bool:
        query = self._id_filter(turn_id)
        if query is None:
            return False
        try:
            result = self._turns.update_one(query, {"$set": {"parts.0.text": text}})
        except PyMongoError as exc:
            raise StoreError("Failed to update turn", cause=exc) from exc
        return result.matched_count > 0

    def delete_all(self) -> int:
        try:
            result = self._turns.delete_many(self._scope())
        except PyMongoError as exc:
            raise StoreError("Failed to clear chat history", cause=exc) from exc
        return int(result.deleted_count)
