from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from threading import RLock
from typing import List, Optional

from ..domain.chat_models import TextPart, Turn, TurnCreate
from ..domain.errors import EmptyTurnError, NotEditableError, NotFoundError
from ..infrastructure.chat_store import TurnStore


logger = logging.getLogger(__name__)

_TICK = timedelta(milliseconds=1)


def _now_ms() -> datetime:
    now = datetime.now(UTC)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


class TurnCommitter:
    """Writes finished turn pairs and applies edits to the turn log.

    Timestamps are stamped here rather than by the client. They are truncated
    to milliseconds (BSON date precision) and strictly increase across every
    turn this committer writes, so the user turn always sorts before its model
    reply and after earlier commits.
    """

    def __init__(self, store: TurnStore) -> None:
        self._store = store
        self._lock = RLock()
        self._last_stamp: Optional[datetime] = None

    @property
    def store(self) -> TurnStore:
        return self._store

    def _next_stamp(self) -> datetime:
        stamp = _now_ms()
        if self._last_stamp is not None and stamp <= self._last_stamp:
            stamp = self._last_stamp + _TICK
        self._last_stamp = stamp
        return stamp

    def commit(self, user_turn: TurnCreate, model_turn: TurnCreate) -> List[Turn]:
        if user_turn.role != "user" or model_turn.role != "model":
            raise ValueError("A commit takes a user turn followed by a model turn")
        for turn in (user_turn, model_turn):
            if not turn.parts:
                raise EmptyTurnError(f"The {turn.role} turn has no parts")
        with self._lock:
            user_stamp = self._next_stamp()
            model_stamp = self._next_stamp()
            saved = self._store.insert_turns(
                [
                    Turn(role=user_turn.role, parts=list(user_turn.parts), created_at=user_stamp),
                    Turn(role=model_turn.role, parts=list(model_turn.parts), created_at=model_stamp),
                ]
            )
        logger.info("Saved turn pair for conversation %s", self._store.conversation_id)
        return saved

    def edit_text(self, turn_id: str, new_text: str) -> None:
        turn = self._store.get_turn(turn_id)
        if turn is None:
            raise NotFoundError(f"Message {turn_id} not found")
        if not turn.parts or not isinstance(turn.parts[0], TextPart):
            raise NotEditableError(f"Message {turn_id} does not start with a text part")
        if not self._store.update_first_text(turn_id, new_text):
            # removed between the lookup and the write
            raise NotFoundError(f"Message {turn_id} not found")

    def clear_all(self) -> int:
        removed = self._store.delete_all()
        logger.info("Cleared %d turns from conversation %s", removed, self._store.conversation_id)
        return removed


_committer: TurnCommitter | None = None


def get_committer(store: TurnStore) -> TurnCommitter:
    global _committer
    if _committer is None or _committer.store is not store:
        _committer = TurnCommitter(store)
    return _committer
