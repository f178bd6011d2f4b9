"""Context variables injected into every log record."""

from contextvars import ContextVar, Token
from typing import Any, Dict, List, Optional

_domain: ContextVar[Optional[str]] = ContextVar("domain", default=None)
_stage: ContextVar[Optional[str]] = ContextVar("stage", default=None)
_worker_id: ContextVar[Optional[str]] = ContextVar("worker_id", default=None)
_message: ContextVar[Dict[str, Any]] = ContextVar("message", default={})


def set_log_context(
    domain: Optional[str] = None,
    stage: Optional[str] = None,
    worker_id: Optional[str] = None,
) -> None:
    """Set process/task level log context. None leaves a field unchanged."""
    if domain is not None:
        _domain.set(domain)
    if stage is not None:
        _stage.set(stage)
    if worker_id is not None:
        _worker_id.set(worker_id)


def get_log_context() -> Dict[str, Any]:
    """Return current log context for formatters."""
    return {
        "domain": _domain.get(),
        "stage": _stage.get(),
        "worker_id": _worker_id.get(),
        **_message.get(),
    }


def clear_log_context() -> None:
    _domain.set(None)
    _stage.set(None)
    _worker_id.set(None)
    _message.set({})


class MessageLogContext:
    """
    Context manager attaching message identity to all logs in its scope.

    Safe across asyncio tasks: values live in a ContextVar, so concurrent
    handlers each see their own message.

    Example:
        with MessageLogContext(source="image-queue", message_id=msg.message_id,
                               event_id=msg.event.id, delivery_count=2):
            await handler.handle(msg.event, context)
    """

    def __init__(self, **fields: Any):
        self._fields = {k: v for k, v in fields.items() if v is not None}
        self._tokens: List[Token] = []

    def __enter__(self) -> "MessageLogContext":
        merged = dict(_message.get())
        merged.update(self._fields)
        self._tokens.append(_message.set(merged))
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        _message.reset(self._tokens.pop())
