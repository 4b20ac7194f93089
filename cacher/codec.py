"""
Typed value codec for cache entries.
"""

from typing import Any, Generic, Type, TypeVar, Union

from pydantic import TypeAdapter, ValidationError as PydanticValidationError
from pydantic_core import PydanticSerializationError

from shared.errors import SerializationError

T = TypeVar("T")


class JsonCodec(Generic[T]):
    """Encode values of one declared type to JSON bytes and back.

    Decoding validates against the declared type, so bytes written for a
    different type surface as ``SerializationError`` instead of a value of the
    wrong shape.
    """

    def __init__(self, value_type: Type[T] = Any):  # type: ignore[assignment]
        self.value_type = value_type
        self._adapter: TypeAdapter[T] = TypeAdapter(value_type)

    def encode(self, value: T) -> bytes:
        try:
            return self._adapter.dump_json(value)
        except (PydanticSerializationError, PydanticValidationError, TypeError, ValueError) as e:
            raise SerializationError(
                f"failed to marshal value: {e}",
                {"value_type": _type_name(self.value_type)}
            ) from e

    def coerce(self, value: Any) -> T:
        """Validate a fetched value into the declared type, as a decode would."""
        try:
            return self._adapter.validate_python(value)
        except PydanticValidationError as e:
            raise SerializationError(
                f"fetched value does not match the cached type: {e}",
                {"value_type": _type_name(self.value_type)}
            ) from e

    def decode(self, data: Union[bytes, str]) -> T:
        try:
            return self._adapter.validate_json(data)
        except PydanticValidationError as e:
            raise SerializationError(
                f"failed to unmarshal cached value: {e}",
                {"value_type": _type_name(self.value_type)}
            ) from e


def _type_name(value_type: Any) -> str:
    return getattr(value_type, "__name__", repr(value_type))
