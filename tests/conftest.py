import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
src_str = str(ROOT / "src")
if src_str not in sys.path:
    sys.path.insert(0, src_str)


@pytest.fixture(autouse=True)
def _isolated_conversation(monkeypatch):
    """Give every test an empty in-memory conversation and no live LLM client."""
    from chatrelay.infrastructure import chat_store
    from chatrelay.services import chat_ai, persistence

    monkeypatch.delenv("CHATRELAY_CHAT_STORE_IMPL", raising=False)
    monkeypatch.delenv("CHATRELAY_SYSTEM_INSTRUCTION", raising=False)
    monkeypatch.setattr(chat_store, "_store", chat_store.InMemoryTurnStore("test-conversation"))
    monkeypatch.setattr(chat_ai, "_client", None)
    monkeypatch.setattr(persistence, "_committer", None)
