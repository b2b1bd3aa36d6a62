from __future__ import annotations

import contextlib
import contextvars
import logging
from typing import Any, Callable, Iterator, Optional

logger = logging.getLogger(__name__)

_ALLOWED_EVENT_CHARS = set("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-_.")


class StreamEmitter:
    """Callable wrapper that delivers agent events to a subscriber."""

    def __init__(self, publish: Callable[[str, Any], None]) -> None:
        self._publish = publish

    def emit(self, event: str, data: Any) -> None:
        try:
            self._publish(event, data)
        except Exception:  # pragma: no cover - best-effort telemetry
            logger.exception("Failed to publish stream event %s", event)


_CURRENT_EMITTER: contextvars.ContextVar[Optional[StreamEmitter]] = contextvars.ContextVar(
    "agent_stream_emitter",
    default=None,
)
# Worker threads do not inherit context variables, so the most recently
# installed emitter is also kept as a process-wide fallback.
_GLOBAL_EMITTER: Optional[StreamEmitter] = None
_EMITTER_WARNING_EMITTED: bool = False


def set_current_emitter(emitter: Optional[StreamEmitter]) -> contextvars.Token:
    """Set the active emitter for the current context, returning a token to reset."""
    global _GLOBAL_EMITTER
    token = _CURRENT_EMITTER.set(emitter)
    _GLOBAL_EMITTER = emitter
    return token


def reset_current_emitter(token: contextvars.Token) -> None:
    """Reset the active emitter context using a token from set_current_emitter."""
    global _GLOBAL_EMITTER
    _CURRENT_EMITTER.reset(token)
    _GLOBAL_EMITTER = _CURRENT_EMITTER.get()


def get_current_emitter() -> Optional[StreamEmitter]:
    """Return the emitter associated with the current execution context."""
    emitter = _CURRENT_EMITTER.get()
    if emitter is not None:
        return emitter
    return _GLOBAL_EMITTER


@contextlib.contextmanager
def stream_to(publish: Callable[[str, Any], None]) -> Iterator[StreamEmitter]:
    """Route events emitted inside the block to ``publish``."""
    emitter = StreamEmitter(publish)
    token = set_current_emitter(emitter)
    try:
        yield emitter
    finally:
        reset_current_emitter(token)


def streaming_enabled() -> bool:
    return get_current_emitter() is not None


def sanitize_event_name(name: str) -> str:
    """Restrict event names to a safe ASCII subset."""
    if not name:
        return "event"
    sanitized = "".join(ch if ch in _ALLOWED_EVENT_CHARS else "_" for ch in name)
    sanitized = sanitized.strip("._")
    return sanitized or "event"


def emit_event(event: str, data: Any) -> None:
    """Emit an event if streaming is active."""
    global _EMITTER_WARNING_EMITTED
    emitter = get_current_emitter()
    if emitter is None:
        if not _EMITTER_WARNING_EMITTED:
            logger.debug("Dropping stream event '%s' because no emitter is active.", event)
            _EMITTER_WARNING_EMITTED = True
        return
    _EMITTER_WARNING_EMITTED = False
    sanitized = sanitize_event_name(event)
    logger.debug(
        "Emitting stream event '%s' payload_keys=%s",
        sanitized,
        list(data.keys()) if isinstance(data, dict) else type(data).__name__,
    )
    emitter.emit(sanitized, data)


__all__ = [
    "StreamEmitter",
    "emit_event",
    "get_current_emitter",
    "reset_current_emitter",
    "sanitize_event_name",
    "set_current_emitter",
    "stream_to",
    "streaming_enabled",
]
