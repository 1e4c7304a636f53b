"""
Event Serialization

Codecs turning event values into payload bytes and back, given the declared
event type. Codecs are stateless and swappable.
"""

import gzip
import json
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any

from pydantic import BaseModel, TypeAdapter

from .exceptions import SerializationFailure


class CompressionType(Enum):
    """Supported compression types."""

    NONE = "none"
    GZIP = "gzip"
    ZLIB = "zlib"


@dataclass
class SerializationConfig:
    """Configuration for event serialization."""

    compression: CompressionType = CompressionType.NONE
    compression_level: int = 6
    encoding: str = "utf-8"

    # JSON specific
    json_ensure_ascii: bool = False
    json_sort_keys: bool = False


@lru_cache(maxsize=256)
def _adapter_for(event_type: type) -> TypeAdapter:
    return TypeAdapter(event_type)


def _uses_dict_protocol(event_type: type) -> bool:
    return (
        not issubclass(event_type, BaseModel)
        and callable(getattr(event_type, "to_dict", None))
        and callable(getattr(event_type, "from_dict", None))
    )


class Codec(ABC):
    """Abstract base class for event codecs."""

    content_type = "application/octet-stream"

    def __init__(self, config: SerializationConfig | None = None):
        self.config = config or SerializationConfig()

    @abstractmethod
    def encode(self, event: Any) -> bytes:
        """Serialize an event to bytes."""

    @abstractmethod
    def decode(self, data: bytes, event_type: type) -> Any:
        """Deserialize bytes into an instance of ``event_type``."""

    def compress(self, data: bytes) -> bytes:
        """Compress serialized data."""
        if self.config.compression == CompressionType.GZIP:
            return gzip.compress(data, compresslevel=self.config.compression_level)
        if self.config.compression == CompressionType.ZLIB:
            return zlib.compress(data, level=self.config.compression_level)
        return data

    def decompress(self, data: bytes) -> bytes:
        """Decompress data."""
        if self.config.compression == CompressionType.GZIP:
            return gzip.decompress(data)
        if self.config.compression == CompressionType.ZLIB:
            return zlib.decompress(data)
        return data


class JSONCodec(Codec):
    """
    JSON codec for typed events.

    Pydantic models, dataclasses and builtin containers go through a pydantic
    ``TypeAdapter``; classes exposing ``to_dict``/``from_dict`` use those.
    """

    content_type = "application/json"

    def to_primitive(self, event: Any) -> Any:
        event_type = type(event)
        if _uses_dict_protocol(event_type):
            return event.to_dict()
        return _adapter_for(event_type).dump_python(event, mode="json")

    def from_primitive(self, data: Any, event_type: type) -> Any:
        if _uses_dict_protocol(event_type):
            return event_type.from_dict(data)
        return _adapter_for(event_type).validate_python(data)

    def encode(self, event: Any) -> bytes:
        try:
            json_str = json.dumps(
                self.to_primitive(event),
                ensure_ascii=self.config.json_ensure_ascii,
                sort_keys=self.config.json_sort_keys,
            )
            return self.compress(json_str.encode(self.config.encoding))
        except Exception as e:
            raise SerializationFailure(
                f"Failed to encode {type(event).__qualname__} to JSON: {e!s}",
                type(event),
                e,
            ) from e

    def decode(self, data: bytes, event_type: type) -> Any:
        try:
            json_str = self.decompress(data).decode(self.config.encoding)
            return self.from_primitive(json.loads(json_str), event_type)
        except Exception as e:
            raise SerializationFailure(
                f"Failed to decode {event_type.__qualname__} from JSON: {e!s}",
                event_type,
                e,
            ) from e


def create_json_codec(compressed: bool = False) -> JSONCodec:
    """Create JSON codec with optional gzip compression."""
    config = SerializationConfig(
        compression=CompressionType.GZIP if compressed else CompressionType.NONE,
    )
    return JSONCodec(config)
