from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from ...domain.chat_models import (
    AttachedFile,
    Attachment,
    EditTurnRequest,
    HistoryResponse,
    MessageResponse,
    SaveResponseRequest,
    SubmitTurnRequest,
)
from ...domain.errors import EmptyTurnError, MalformedPayloadError
from ...infrastructure.chat_store import get_turn_store
from ...services import attachment_codec, chat_ai
from ...services.persistence import get_committer
from ...services.streaming import relay
from ...services.transcript import load_transcript


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])


def _decode_attachments(files: Optional[List[AttachedFile]]) -> List[Attachment]:
    attachments: List[Attachment] = []
    for index, item in enumerate(files or []):
        try:
            mime_type, data = attachment_codec.decode(item.fileData)
        except MalformedPayloadError as exc:
            logger.warning("Skipping attachment %d (%s): %s", index, item.fileName or "unnamed", exc)
            continue
        if item.fileType and item.fileType != mime_type:
            logger.debug("Attachment %s declares %s but carries %s", item.fileName, item.fileType, mime_type)
        attachments.append(Attachment(data=data, mime_type=mime_type, file_name=item.fileName))
    return attachments


@router.post("", response_class=StreamingResponse)
def submit_turn(req: SubmitTurnRequest, request: Request) -> StreamingResponse:
    message = req.message or ""
    attachments = _decode_attachments(req.attachedFiles)
    if not message and not attachments:
        raise EmptyTurnError("Message or file is required")

    store = get_turn_store()
    history = load_transcript(store)
    fragments = chat_ai.complete(history, message, attachments)

    return StreamingResponse(
        relay(fragments, request.is_disconnected),
        media_type="text/plain; charset=utf-8",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/history", response_model=HistoryResponse, response_model_exclude_none=True)
def get_history() -> HistoryResponse:
    store = get_turn_store()
    return HistoryResponse(history=store.list_turns())


@router.post("/clear", response_model=MessageResponse)
def clear_history() -> MessageResponse:
    get_committer(get_turn_store()).clear_all()
    return MessageResponse(message="Chat history cleared")


@router.post("/edit", response_model=MessageResponse)
def edit_message(req: EditTurnRequest) -> MessageResponse:
    get_committer(get_turn_store()).edit_text(req.id, req.newText)
    return MessageResponse(message="Message updated")


@router.post("/save-response", response_model=MessageResponse)
def save_response(req: SaveResponseRequest) -> MessageResponse:
    get_committer(get_turn_store()).commit(req.userMessage, req.modelResponse)
    return MessageResponse(message="Messages saved")
