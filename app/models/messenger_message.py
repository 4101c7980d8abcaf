from sqlalchemy import Column, Integer, String, Text, JSON, Index
from core.model import Base, Timestamp, utcnow


class MessageStatus:
    """Lifecycle states of a messenger_messages row."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    ALL = (PENDING, PROCESSING, COMPLETED, FAILED)


class MessengerMessage(Base):
    """Model for messenger_messages table - live queue rows and their leases."""

    __tablename__ = "messenger_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transport_name = Column(String(255), nullable=False)
    queue_name = Column(String(255), nullable=False, default="default")
    body = Column(Text, nullable=False)
    headers = Column(JSON, nullable=False, default=dict)
    priority = Column(Integer, nullable=False, default=0)
    status = Column(String(32), nullable=False, default=MessageStatus.PENDING)
    scheduled_at = Column(Timestamp, nullable=True)
    available_at = Column(Timestamp, nullable=False, default=utcnow)
    idempotency_key = Column(String(255), nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    max_retries = Column(Integer, nullable=False, default=3)
    retry_count = Column(Integer, nullable=False, default=0)
    locked_at = Column(Timestamp, nullable=True)
    locked_by = Column(String(255), nullable=True)
    lock_expires_at = Column(Timestamp, nullable=True)
    last_error = Column(Text, nullable=True)
    error_class = Column(String(255), nullable=True)
    processed_at = Column(Timestamp, nullable=True)
    created_at = Column(Timestamp, nullable=False, default=utcnow)

    __table_args__ = (
        Index("messenger_messages_receive_index", "transport_name", "status", "available_at"),
        Index("messenger_messages_idempotency_index", "transport_name", "idempotency_key"),
        Index("messenger_messages_lock_index", "status", "lock_expires_at"),
    )

    def __repr__(self):
        return (
            f"<MessengerMessage(id={self.id}, queue='{self.queue_name}', "
            f"status='{self.status}', locked_by='{self.locked_by}')>"
        )
