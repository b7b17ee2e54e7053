from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Iterator, Optional

from starlette.concurrency import run_in_threadpool

from ..domain.errors import UpstreamGenerationError
from ..observability.metrics import STREAM_FRAGMENTS, STREAM_OUTCOMES


logger = logging.getLogger(__name__)

# Appended as the final chunk when generation fails after the reply started.
# A cleanly completed reply never ends with it.
STREAM_ERROR_MARKER = "\n\n[error: generation interrupted]"

_EXHAUSTED = object()


def _next_or_sentinel(it: Iterator[Any]) -> Any:
    try:
        return next(it)
    except StopIteration:
        return _EXHAUSTED


def _release(fragments: Any) -> None:
    close = getattr(fragments, "close", None)
    if close is None:
        return
    try:
        close()
    except ValueError:
        # Plain generator still running in a worker thread.
        logger.debug("Upstream iterator busy during release")


async def relay(
    fragments: Iterable[str],
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> AsyncIterator[bytes]:
    """Forward each fragment to the byte sink as soon as it is produced.

    Each blocking pull runs in a worker thread. The consumer's connection is
    checked before every pull; once it is gone no further fragments are
    requested. The upstream iterator is closed on every exit path.
    """
    iterator = iter(fragments)
    outcome = "completed"
    try:
        while True:
            if is_disconnected is not None and await is_disconnected():
                outcome = "disconnected"
                logger.info("Client disconnected; stopping completion stream")
                break
            fragment = await run_in_threadpool(_next_or_sentinel, iterator)
            if fragment is _EXHAUSTED:
                break
            STREAM_FRAGMENTS.inc()
            yield fragment.encode("utf-8")
    except UpstreamGenerationError as exc:
        outcome = "error"
        logger.error("Completion stream failed mid-reply: %s", exc, exc_info=True)
        yield STREAM_ERROR_MARKER.encode("utf-8")
    except Exception:
        outcome = "error"
        raise
    except BaseException:
        # cancelled by the server or closed by the consumer
        outcome = "disconnected"
        raise
    finally:
        _release(iterator)
        STREAM_OUTCOMES.labels(outcome=outcome).inc()
