import logging

from core.message import Message
from core.messenger.envelope import Envelope

logger = logging.getLogger("DbMessenger.Handlers.Example")


class SendWelcomeEmail(Message):
    """
    Example message.

    Usage:
        from app.handlers.example_handler import SendWelcomeEmail
        from core.messenger import dispatch

        await dispatch(
            SendWelcomeEmail(to="user@example.com", name="Ada"),
            queue="emails",
            idempotency_key="welcome:user@example.com",
        )
    """

    def __init__(self, to=None, name=None):
        self.to = to
        self.name = name


async def handle(envelope: Envelope) -> None:
    """Handle messages from any queue; raise to trigger a retry."""
    message = envelope.message

    if isinstance(message, SendWelcomeEmail):
        if not message.to:
            raise ValueError("Welcome email has no recipient")
        # A real application would call its mail service here
        logger.info(f"Sending welcome email to {message.to} (hello, {message.name or 'there'})")
        return

    logger.info(f"Message {envelope.id} on queue '{envelope.queue_name}': {message!r}")
