import json
from abc import ABC, abstractmethod
from typing import Any

from core.message import Message
from core.messenger.errors import SerializationError


class Serializer(ABC):
    """
    Codec between application messages and the stored ``body`` column.
    """

    @abstractmethod
    def serialize(self, message: Any) -> str:
        """
        Encode a message for storage.

        Args:
            message: The application payload

        Returns:
            Text stored in the body column
        """
        pass

    @abstractmethod
    def deserialize(self, payload: str) -> Any:
        """
        Decode a stored body back into a message.

        Args:
            payload: Text from the body column

        Returns:
            The application payload
        """
        pass

    def message_type(self, message: Any) -> str:
        """Type discriminator stored in the ``type`` header."""
        if isinstance(message, Message):
            return message.type_name()
        return type(message).__name__


class JsonSerializer(Serializer):
    """
    JSON codec. Message instances keep their class path so they are rebuilt
    as the same type; plain JSON values are stored under ``data``.
    """

    def serialize(self, message: Any) -> str:
        try:
            if isinstance(message, Message):
                return message.serialize()
            return json.dumps({"class": None, "data": message})
        except (TypeError, ValueError) as e:
            raise SerializationError(
                f"Cannot serialize {type(message).__name__}: {e}"
            ) from e

    def deserialize(self, payload: str) -> Any:
        try:
            decoded = json.loads(payload)
            if not isinstance(decoded, dict) or "data" not in decoded:
                raise SerializationError("Payload is not a serialized message")
            if decoded.get("class"):
                return Message.load_class(decoded["class"]).from_data(decoded["data"])
            return decoded["data"]
        except SerializationError:
            raise
        except (TypeError, ValueError, ImportError, AttributeError) as e:
            raise SerializationError(f"Cannot deserialize payload: {e}") from e
