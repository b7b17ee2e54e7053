from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from threading import RLock
from typing import Any, Dict, List, Optional, Protocol
import logging
import os
import uuid

from ..domain.chat_models import Turn, part_to_record


logger = logging.getLogger(__name__)

DEFAULT_CONVERSATION_ID = "global"


class TurnStore(Protocol):
    conversation_id: str
    kind: str

    def insert_turns(self, turns: List[Turn]) -> List[Turn]: ...

    def list_turns(self) -> List[Turn]: ...

    def get_turn(self, turn_id: str) -> Optional[Turn]: ...

    def update_first_text(self, turn_id: str, text: str) -> bool: ...

    def delete_all(self) -> int: ...


def conversation_id_from_env() -> str:
    return (os.getenv("CHATRELAY_CONVERSATION_ID") or DEFAULT_CONVERSATION_ID).strip() or DEFAULT_CONVERSATION_ID


def turn_to_record(turn: Turn, conversation_id: str) -> Dict[str, Any]:
    return {
        "conversation_id": conversation_id,
        "role": turn.role,
        "parts": [part_to_record(p) for p in turn.parts],
        "createdAt": turn.created_at,
    }


@dataclass
class _Record:
    seq: int
    turn_id: str
    doc: Dict[str, Any]


class InMemoryTurnStore:
    kind = "in-memory"

    def __init__(self, conversation_id: Optional[str] = None) -> None:
        self.conversation_id = conversation_id or conversation_id_from_env()
        self._records: Dict[str, _Record] = {}
        self._seq = 0
        self._lock = RLock()

    def _now(self) -> datetime:
        return datetime.now(UTC)

    def _to_turn(self, record: _Record) -> Turn:
        doc = dict(record.doc)
        doc["_id"] = record.turn_id
        return Turn.from_record(doc)

    def insert_turns(self, turns: List[Turn]) -> List[Turn]:
        with self._lock:
            out: List[Turn] = []
            for turn in turns:
                self._seq += 1
                tid = uuid.uuid4().hex
                doc = turn_to_record(turn, self.conversation_id)
                if doc["createdAt"] is None:
                    doc["createdAt"] = self._now()
                record = _Record(seq=self._seq, turn_id=tid, doc=doc)
                self._records[tid] = record
                out.append(self._to_turn(record))
            return out

    def list_turns(self) -> List[Turn]:
        with self._lock:
            records = sorted(self._records.values(), key=lambda r: (r.doc["createdAt"], r.seq))
            return [self._to_turn(r) for r in records]

    def get_turn(self, turn_id: str) -> Optional[Turn]:
        with self._lock:
            record = self._records.get(turn_id)
            if not record:
                return None
            return self._to_turn(record)

    def update_first_text(self, turn_id: str, text: str) -> bool:
        with self._lock:
            record = self._records.get(turn_id)
            if not record or not record.doc.get("parts"):
                return False
            parts = [dict(p) for p in record.doc["parts"]]
            parts[0]["text"] = text
            record.doc["parts"] = parts
            return True

    def delete_all(self) -> int:
        with self._lock:
            removed = len(self._records)
            self._records.clear()
            return removed


_store: TurnStore | None = None


def get_turn_store() -> TurnStore:
    global _store
    if _store is not None:
        return _store
    impl = os.getenv("CHATRELAY_CHAT_STORE_IMPL", "memory").lower()
    if impl == "mongo":
        from .chat_store_mongo import MongoTurnStore

        _store = MongoTurnStore()
        logger.info("Using Mongo turn store for conversation %s", _store.conversation_id)
        return _store
    _store = InMemoryTurnStore()
    return _store
