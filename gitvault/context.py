"""Request-scoped cancellation, deadline and log fields.

A ``RequestContext`` is passed explicitly into every clone, fetch and read so
long-running work can stop early, and so log lines carry the fields of the
request that caused them.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, MutableMapping

from gitvault.exceptions import OperationCancelledError


class FieldLogger(logging.LoggerAdapter):
    """Logger adapter that appends accumulated fields to every message."""

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        fields = dict(self.extra or {})
        extra = kwargs.get("extra")
        if extra:
            fields.update(extra)
        kwargs["extra"] = {"fields": fields}
        if fields:
            rendered = " ".join(f"{k}={v}" for k, v in fields.items())
            msg = f"{msg} [{rendered}]"
        return msg, kwargs


@dataclass
class RequestContext:
    """Cancellation signal, optional deadline and log fields for one request.

    Derived contexts made with ``with_fields`` share the cancellation event
    and deadline of their parent.
    """

    deadline: float | None = None
    fields: dict[str, Any] = field(default_factory=dict)
    _cancelled: threading.Event = field(default_factory=threading.Event, repr=False)

    @classmethod
    def background(cls) -> "RequestContext":
        """A context that never expires, for startup and CLI work."""
        return cls()

    @classmethod
    def with_timeout(cls, seconds: float | None, **fields: Any) -> "RequestContext":
        deadline = time.monotonic() + seconds if seconds else None
        return cls(deadline=deadline, fields=dict(fields))

    def with_fields(self, **fields: Any) -> "RequestContext":
        merged = {**self.fields, **{k: v for k, v in fields.items() if v is not None}}
        return RequestContext(deadline=self.deadline, fields=merged, _cancelled=self._cancelled)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None without one."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def raise_if_done(self) -> None:
        """Raise OperationCancelledError if cancelled or past the deadline."""
        if self._cancelled.is_set():
            raise OperationCancelledError("operation cancelled", repo=self.fields.get("repo"))
        if self.expired:
            raise OperationCancelledError("deadline exceeded", repo=self.fields.get("repo"))

    def logger(self, base: logging.Logger) -> FieldLogger:
        return FieldLogger(base, dict(self.fields))
