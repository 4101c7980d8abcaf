from app.models.messenger_message import MessengerMessage, MessageStatus
from app.models.messenger_failed_message import MessengerFailedMessage

__all__ = [
    "MessengerMessage",
    "MessageStatus",
    "MessengerFailedMessage",
]
