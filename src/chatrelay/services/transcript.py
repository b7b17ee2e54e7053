from __future__ import annotations

import logging
from typing import Iterable, List

from ..domain.chat_models import (
    AudioPart,
    CompletionBlob,
    CompletionPart,
    CompletionText,
    CompletionTurn,
    DocumentPart,
    ImagePart,
    TextPart,
    Turn,
)
from ..domain.errors import MalformedPayloadError
from ..infrastructure.chat_store import TurnStore
from . import attachment_codec


logger = logging.getLogger(__name__)


def materialize(turns: Iterable[Turn]) -> List[CompletionTurn]:
    """Rebuild the dialogue history in the shape the completion service expects.

    Turn and part order are preserved exactly. Attachments are decoded to raw
    bytes. Empty text and parts that cannot be represented are dropped
    without aborting the rest of the transcript.
    """
    history: List[CompletionTurn] = []
    for turn in turns:
        parts: List[CompletionPart] = []
        for index, part in enumerate(turn.parts):
            if isinstance(part, TextPart):
                if not part.text:
                    continue
                parts.append(CompletionText(text=part.text))
            elif isinstance(part, (ImagePart, DocumentPart, AudioPart)):
                try:
                    mime_type, data = attachment_codec.decode(part.payload)
                except MalformedPayloadError as exc:
                    logger.warning(
                        "Skipping malformed %s attachment in turn %s part %d: %s",
                        part.kind,
                        turn.id,
                        index,
                        exc,
                    )
                    continue
                parts.append(CompletionBlob(data=data, mime_type=mime_type))
        history.append(CompletionTurn(role=turn.role, parts=parts))
    return history


def load_transcript(store: TurnStore) -> List[CompletionTurn]:
    turns = store.list_turns()
    logger.debug("Loaded %d stored turns for conversation %s", len(turns), store.conversation_id)
    return materialize(turns)
