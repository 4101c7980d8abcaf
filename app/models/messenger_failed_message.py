from sqlalchemy import Column, Integer, String, Text, JSON
from core.model import Base, Timestamp, utcnow


class MessengerFailedMessage(Base):
    """Model for messenger_failed_messages table - append-only dead-letter archive."""

    __tablename__ = "messenger_failed_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(Integer, nullable=False, index=True)
    transport_name = Column(String(255), nullable=False)
    queue_name = Column(String(255), nullable=False, index=True)
    body = Column(Text, nullable=False)
    headers = Column(JSON, nullable=False, default=dict)
    error = Column(Text, nullable=False)
    error_class = Column(String(255), nullable=True)
    error_trace = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    idempotency_key = Column(String(255), nullable=True)
    failed_at = Column(Timestamp, nullable=False, default=utcnow)
    created_at = Column(Timestamp, nullable=False, default=utcnow)

    def __repr__(self):
        return (
            f"<MessengerFailedMessage(id={self.id}, message_id={self.message_id}, "
            f"queue='{self.queue_name}', failed_at='{self.failed_at}')>"
        )
