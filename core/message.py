import importlib
import json
import logging
from typing import Any, Dict

logger = logging.getLogger("DbMessenger.Message")


class Message:
    """
    Base class for structured message payloads.

    Public instance attributes are the message data. The class path travels
    with the payload so the receiving side can rebuild the same type.

    Example:
        class SendWelcomeEmail(Message):
            def __init__(self, to=None):
                self.to = to

        await dispatch(SendWelcomeEmail(to="user@example.com"), queue="emails")
    """

    @classmethod
    def type_name(cls) -> str:
        return f"{cls.__module__}.{cls.__name__}"

    def get_data(self) -> Dict[str, Any]:
        """
        Get the serializable data for the message.
        Override this method to control exactly what is stored.

        Returns:
            Dictionary of data to be serialized
        """
        return {
            key: value
            for key, value in self.__dict__.items()
            if not key.startswith("_")
        }

    def serialize(self) -> str:
        """
        Serialize the message to a JSON string for storage.

        Returns:
            JSON string representation of the message
        """
        return json.dumps({"class": self.type_name(), "data": self.get_data()})

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "Message":
        """Build an instance from stored data without calling ``__init__``."""
        message = cls.__new__(cls)
        for key, value in data.items():
            setattr(message, key, value)
        return message

    @classmethod
    def unserialize(cls, payload: str) -> "Message":
        """
        Unserialize a message from a JSON string.

        Args:
            payload: JSON string representation of the message

        Returns:
            Message instance of the class named in the payload
        """
        message_data = json.loads(payload)
        return cls.load_class(message_data["class"]).from_data(message_data.get("data", {}))

    @staticmethod
    def load_class(class_path: str) -> type:
        module_name, class_name = class_path.rsplit(".", 1)
        module = importlib.import_module(module_name)
        message_class = getattr(module, class_name)
        if not (isinstance(message_class, type) and issubclass(message_class, Message)):
            raise TypeError(f"{class_path} is not a Message subclass")
        return message_class

    def __eq__(self, other):
        return type(self) is type(other) and self.get_data() == other.get_data()

    def __repr__(self):
        return f"<{self.__class__.__name__}({self.get_data()})>"
