"""Conversion between inline ``data:`` URLs and raw attachment bytes."""

from __future__ import annotations

import base64
import binascii
from typing import Tuple

from ..domain.errors import MalformedPayloadError


_SCHEME = "data:"
_SEPARATOR = ";base64,"


def decode(payload: str) -> Tuple[str, bytes]:
    """Split ``data:<mime>;base64,<data>`` into ``(mime_type, bytes)``.

    Raises :class:`MalformedPayloadError` for anything else, including a
    payload that contains the ``;base64,`` separator more than once.
    """
    if not isinstance(payload, str) or not payload.startswith(_SCHEME):
        raise MalformedPayloadError("Attachment payload must start with 'data:'")
    segments = payload.split(_SEPARATOR)
    if len(segments) != 2:
        raise MalformedPayloadError("Attachment payload must contain exactly one ';base64,' separator")
    header, encoded = segments
    mime_type = header[len(_SCHEME):].split(";", 1)[0].strip()
    if not mime_type:
        raise MalformedPayloadError("Attachment payload has an empty MIME type")
    if not encoded:
        raise MalformedPayloadError("Attachment payload has no data")
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedPayloadError("Attachment payload is not valid base64", cause=exc) from exc
    return mime_type, data


def encode(data: bytes, mime_type: str) -> str:
    if not data:
        raise MalformedPayloadError("Cannot encode an empty attachment")
    if not mime_type or ";" in mime_type:
        raise MalformedPayloadError(f"Cannot encode attachment with MIME type {mime_type!r}")
    encoded = base64.b64encode(data).decode("ascii")
    return f"{_SCHEME}{mime_type}{_SEPARATOR}{encoded}"
