from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class Envelope:
    """
    A unit of work plus its delivery metadata.

    Producers build envelopes and hand them to a transport; the transport
    writes the row id back onto ``id`` and, on receive, fills in the lease
    fields (``locked_by``, ``locked_at``) that later fence acknowledge/release.
    """

    message: Any
    transport_name: str = ""
    queue_name: str = "default"
    id: Optional[int] = None
    headers: Dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    scheduled_at: Optional[datetime] = None
    available_at: Optional[datetime] = None
    idempotency_key: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    retry_count: int = 0
    max_retries: int = 3
    locked_by: Optional[str] = None
    locked_at: Optional[datetime] = None

    @property
    def message_type(self) -> Optional[str]:
        return self.headers.get("type")

    def __repr__(self):
        return (
            f"<Envelope(id={self.id}, transport='{self.transport_name}', "
            f"queue='{self.queue_name}', priority={self.priority}, "
            f"retry={self.retry_count}/{self.max_retries})>"
        )
