from __future__ import annotations

import base64
from typing import Iterable, List, Optional, Sequence

from chatrelay.domain.chat_models import CompletionTurn


def data_url(data: bytes, mime_type: str = "image/png") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


class FakeCompletionClient:
    """Stands in for GeminiClient; records every request it receives."""

    def __init__(self, fragments: Sequence[str] = ("Hello", ", ", "world"), error: Optional[Exception] = None) -> None:
        self.fragments = list(fragments)
        self.error = error
        self.calls: List[dict] = []

    def stream(self, contents: Sequence[CompletionTurn], system_instruction: str) -> Iterable[str]:
        self.calls.append({"contents": list(contents), "system_instruction": system_instruction})
        if self.error is not None:
            raise self.error
        return FakeStream(self.fragments)


class FakeStream:
    def __init__(self, fragments: Sequence[str], fail_after: Optional[int] = None, error: Optional[Exception] = None) -> None:
        self._fragments = list(fragments)
        self._fail_after = fail_after
        self._error = error
        self.pulled = 0
        self.closed = False

    def __iter__(self) -> "FakeStream":
        return self

    def __next__(self) -> str:
        if self.closed:
            raise StopIteration
        if self._fail_after is not None and self.pulled >= self._fail_after:
            raise self._error  # type: ignore[misc]
        if self.pulled >= len(self._fragments):
            raise StopIteration
        fragment = self._fragments[self.pulled]
        self.pulled += 1
        return fragment

    def close(self) -> None:
        self.closed = True
