from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


logger = logging.getLogger(__name__)

Role = Literal["user", "model"]
PartKind = Literal["text", "image", "document", "audio"]


class TextPart(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text: str

    @property
    def kind(self) -> PartKind:
        return "text"


class ImagePart(BaseModel):
    model_config = ConfigDict(extra="forbid")

    image: str
    fileName: Optional[str] = None

    @property
    def kind(self) -> PartKind:
        return "image"

    @property
    def payload(self) -> str:
        return self.image


class DocumentPart(BaseModel):
    model_config = ConfigDict(extra="forbid")

    document: str
    fileName: Optional[str] = None

    @property
    def kind(self) -> PartKind:
        return "document"

    @property
    def payload(self) -> str:
        return self.document


class AudioPart(BaseModel):
    model_config = ConfigDict(extra="forbid")

    audio: str
    fileName: Optional[str] = None

    @property
    def kind(self) -> PartKind:
        return "audio"

    @property
    def payload(self) -> str:
        return self.audio


Part = Union[TextPart, ImagePart, DocumentPart, AudioPart]
AttachmentPart = Union[ImagePart, DocumentPart, AudioPart]

_PART_TYPES: Tuple[type, ...] = (TextPart, ImagePart, DocumentPart, AudioPart)


def parse_part(raw: Any) -> Optional[Part]:
    """Build the typed part for a stored record, or ``None`` for unknown shapes."""
    if isinstance(raw, _PART_TYPES):
        return raw  # type: ignore[return-value]
    if not isinstance(raw, dict):
        return None
    data = {k: v for k, v in raw.items() if v is not None}
    for part_type in _PART_TYPES:
        try:
            return part_type.model_validate(data)
        except ValidationError:
            continue
    logger.debug("Dropping unrecognised part with keys=%s", sorted(data))
    return None


def part_to_record(part: Part) -> Dict[str, Any]:
    return part.model_dump(exclude_none=True)


class TurnCreate(BaseModel):
    """A turn as sent by the client to save-response (no id, no timestamp)."""

    role: Role
    parts: List[Part] = Field(default_factory=list)


class Turn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = Field(default=None, alias="_id")
    role: Role
    parts: List[Part] = Field(default_factory=list)
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")

    @classmethod
    def from_record(cls, doc: Dict[str, Any]) -> "Turn":
        parts = [p for p in (parse_part(raw) for raw in doc.get("parts") or []) if p is not None]
        raw_id = doc.get("_id")
        return cls(
            id=str(raw_id) if raw_id is not None else None,
            role=doc.get("role", "user"),
            parts=parts,
            created_at=doc.get("createdAt"),
        )


class AttachedFile(BaseModel):
    fileData: str
    fileType: Optional[str] = None
    fileName: Optional[str] = None


class SubmitTurnRequest(BaseModel):
    message: Optional[str] = None
    attachedFiles: Optional[List[AttachedFile]] = None


class EditTurnRequest(BaseModel):
    id: str
    newText: str


class SaveResponseRequest(BaseModel):
    userMessage: TurnCreate
    modelResponse: TurnCreate

    @field_validator("userMessage")
    @classmethod
    def _user_role(cls, value: TurnCreate) -> TurnCreate:
        if value.role != "user":
            raise ValueError("userMessage must have role 'user'")
        return value

    @field_validator("modelResponse")
    @classmethod
    def _model_role(cls, value: TurnCreate) -> TurnCreate:
        if value.role != "model":
            raise ValueError("modelResponse must have role 'model'")
        return value


class HistoryResponse(BaseModel):
    history: List[Turn]


class MessageResponse(BaseModel):
    message: str


# Shapes consumed by the completion service. Kept as plain dataclasses; they
# never cross the HTTP boundary.


@dataclass(frozen=True)
class CompletionText:
    text: str


@dataclass(frozen=True)
class CompletionBlob:
    data: bytes
    mime_type: str


CompletionPart = Union[CompletionText, CompletionBlob]


@dataclass(frozen=True)
class CompletionTurn:
    role: Role
    parts: List[CompletionPart] = field(default_factory=list)


@dataclass(frozen=True)
class Attachment:
    """Raw attachment decoded from a submitted turn."""

    data: bytes
    mime_type: str
    file_name: Optional[str] = None
