"""Commands accepted by the worker's message endpoint.

Each command is its own dataclass; ``parse_message`` turns the wire form
``{"type": ..., "payload": ...}`` into exactly one of them.
"""

from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Union


class MessageError(ValueError):
    """A message could not be turned into a command; ``str(e)`` is sent back as ``{"error": ...}``."""

    pass


@dataclass(frozen=True)
class SkipWaiting:
    type: ClassVar[str] = "SKIP_WAITING"


@dataclass(frozen=True)
class GetCacheSize:
    type: ClassVar[str] = "GET_CACHE_SIZE"


@dataclass(frozen=True)
class ClearCache:
    type: ClassVar[str] = "CLEAR_CACHE"


@dataclass(frozen=True)
class CacheData:
    key: str
    data: Any
    type: ClassVar[str] = "CACHE_DATA"


Command = Union[SkipWaiting, GetCacheSize, ClearCache, CacheData]

COMMAND_TYPES = {cls.type: cls for cls in (SkipWaiting, GetCacheSize, ClearCache, CacheData)}


def parse_message(message: Any) -> Command:
    """Parse a wire message into a command.

    Raises:
        MessageError: the message has no known ``type`` or its payload is invalid
    """
    if not isinstance(message, dict) or "type" not in message:
        raise MessageError("Message must be an object with a type")

    command_type = message["type"]
    if command_type not in COMMAND_TYPES:
        raise MessageError("Unknown message type")

    if command_type == CacheData.type:
        payload = message.get("payload")
        if (
            not isinstance(payload, dict)
            or not isinstance(payload.get("key"), str)
            or not payload["key"]
            or payload.get("data") is None
        ):
            raise MessageError("Invalid payload for CACHE_DATA")
        return CacheData(key=payload["key"], data=payload["data"])

    return COMMAND_TYPES[command_type]()


def to_message(command: Command) -> Dict[str, Any]:
    """Inverse of ``parse_message``, used by the client."""
    message: Dict[str, Any] = {"type": command.type}
    if isinstance(command, CacheData):
        message["payload"] = {"key": command.key, "data": command.data}
    return message
