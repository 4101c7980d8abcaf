from typing import Any, Dict, Optional


class ErrorKind:
    """Classification carried by every TransportError."""

    INVALID_ENVELOPE = "invalid-envelope"
    SEND_FAILED = "send-failed"
    RECEIVE_FAILED = "receive-failed"
    ACKNOWLEDGE_FAILED = "acknowledge-failed"
    RELEASE_FAILED = "release-failed"
    REJECT_FAILED = "reject-failed"
    LOCK_ERROR = "lock-error"
    MAINTENANCE_FAILED = "maintenance-failed"


class TransportError(RuntimeError):
    """
    Raised when a transport operation cannot complete.

    Carries the routing context (transport, queue, message id) and the
    underlying cause so the failure can be logged and correlated on its own.
    """

    def __init__(
        self,
        message: str,
        kind: str,
        transport: Optional[str] = None,
        queue: Optional[str] = None,
        message_id: Optional[int] = None,
        cause: Optional[BaseException] = None,
        **context: Any,
    ):
        super().__init__(message)
        self.kind = kind
        self.transport = transport
        self.queue = queue
        self.message_id = message_id
        self.cause = cause
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Structured form suitable for log records and dead-letter metadata."""
        data = {
            "kind": self.kind,
            "message": str(self),
            "transport": self.transport,
            "queue": self.queue,
            "message_id": self.message_id,
            "cause": f"{self.cause.__class__.__name__}: {self.cause}" if self.cause else None,
        }
        data.update(self.context)
        return data

    def __repr__(self):
        return (
            f"<{self.__class__.__name__}(kind='{self.kind}', transport='{self.transport}', "
            f"queue='{self.queue}', message_id={self.message_id})>"
        )


class LockError(TransportError):
    """Raised when the atomic claim statement itself fails (not when it claims nothing)."""

    def __init__(self, message: str, **kwargs: Any):
        kwargs.pop("kind", None)
        super().__init__(message, ErrorKind.LOCK_ERROR, **kwargs)


class SerializationError(ValueError):
    """Raised by a serializer that cannot encode or decode a payload."""
