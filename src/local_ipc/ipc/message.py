"""
Message container for the local IPC transport.

A Message holds one payload (header, body, response or error description)
plus an error flag. The payload is stored once, in the form it was created
from, and the string and bytes views are derived from it on first access.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from typing import Any

# Text is mapped to bytes with surrogateescape so that any byte sequence,
# valid UTF-8 or not, survives a bytes -> str -> bytes round trip.
TEXT_ENCODING = "utf-8"
TEXT_ERRORS = "surrogateescape"

BytesLike = bytes | bytearray | memoryview


class MessageKind(Enum):
    """Where the canonical bytes of a Message came from."""

    OWNED = "owned"
    BYTES = "bytes"
    STRING = "string"


class Message:
    """
    Immutable byte payload with an error flag.

    Messages are created per send/receive operation or per error site and
    belong to whoever receives them. Copying returns the same instance.

    Example:
        >>> msg = Message.from_string("hello")
        >>> msg.size
        5
        >>> msg.as_bytes()
        b'hello'
        >>> Message.error("connect() failed (error: 2)").is_error
        True
    """

    __slots__ = ("_kind", "_raw", "_is_error", "_string", "_bytes")

    def __init__(
        self,
        data: BytesLike | Iterable[int] = b"",
        is_error: bool = False,
    ) -> None:
        """
        Create a Message holding a copy of a byte sequence.

        Args:
            data: Bytes-like object or iterable of ints in range(256).
            is_error: Whether the payload describes a failure.
        """
        if isinstance(data, (int, str)):
            raise TypeError(
                f"Message() takes bytes or an iterable of ints, not {type(data).__name__}"
            )
        raw = bytes(data)
        self._init(MessageKind.BYTES, raw, is_error, string=None, as_bytes=raw)

    def _init(
        self,
        kind: MessageKind,
        raw: bytes | bytearray,
        is_error: bool,
        string: str | None,
        as_bytes: bytes | None,
    ) -> None:
        object.__setattr__(self, "_kind", kind)
        object.__setattr__(self, "_raw", raw)
        object.__setattr__(self, "_is_error", bool(is_error))
        object.__setattr__(self, "_string", string)
        object.__setattr__(self, "_bytes", as_bytes)

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    @classmethod
    def from_buffer(cls, buffer: bytearray, is_error: bool = False) -> Message:
        """
        Create a Message that takes ownership of a buffer without copying it.

        The caller hands the buffer over and must not modify it afterwards.

        Args:
            buffer: Buffer produced by a receive operation.
            is_error: Whether the payload describes a failure.

        Returns:
            A Message backed by the given buffer.
        """
        if not isinstance(buffer, bytearray):
            raise TypeError(
                f"from_buffer() takes a bytearray, not {type(buffer).__name__}"
            )
        msg = cls.__new__(cls)
        msg._init(MessageKind.OWNED, buffer, is_error, string=None, as_bytes=None)
        return msg

    @classmethod
    def from_bytes(
        cls, data: BytesLike | Iterable[int], is_error: bool = False
    ) -> Message:
        """Create a Message holding a copy of a byte sequence."""
        return cls(data, is_error=is_error)

    @classmethod
    def from_string(cls, text: str, is_error: bool = False) -> Message:
        """
        Create a Message holding a copy of a string.

        Args:
            text: Payload text.
            is_error: Whether the text describes a failure.

        Returns:
            A Message whose string view is ``text``.
        """
        raw = text.encode(TEXT_ENCODING, TEXT_ERRORS)
        msg = cls.__new__(cls)
        msg._init(MessageKind.STRING, raw, is_error, string=text, as_bytes=raw)
        return msg

    @classmethod
    def error(cls, description: str) -> Message:
        """Create an error Message carrying a human-readable description."""
        return cls.from_string(description, is_error=True)

    @classmethod
    def coerce(cls, value: Message | BytesLike | str) -> Message:
        """
        Return ``value`` as a Message.

        Strings use from_string(), bytes-like objects are copied, and
        Messages are returned unchanged.
        """
        if isinstance(value, Message):
            return value
        if isinstance(value, str):
            return cls.from_string(value)
        return cls(value)

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def kind(self) -> MessageKind:
        """The construction source of this Message."""
        return self._kind

    @property
    def is_error(self) -> bool:
        """Whether this Message describes a failure."""
        return self._is_error

    @property
    def size(self) -> int:
        """Payload length in bytes."""
        return len(self._raw)

    def as_raw(self) -> memoryview:
        """Return a read-only view of the payload without copying it."""
        return memoryview(self._raw).toreadonly()

    def as_string(self) -> str:
        """Return the payload as text, decoding it on first access."""
        if self._string is None:
            text = bytes(self._raw).decode(TEXT_ENCODING, TEXT_ERRORS)
            object.__setattr__(self, "_string", text)
        return self._string

    def as_bytes(self) -> bytes:
        """Return the payload as an immutable byte sequence."""
        if self._bytes is None:
            object.__setattr__(self, "_bytes", bytes(self._raw))
        return self._bytes

    # -------------------------------------------------------------------------
    # Python protocol
    # -------------------------------------------------------------------------

    def __len__(self) -> int:
        return self.size

    def __bytes__(self) -> bytes:
        return self.as_bytes()

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError(f"{type(self).__name__} is immutable")

    def __delattr__(self, name: str) -> None:
        raise AttributeError(f"{type(self).__name__} is immutable")

    def __copy__(self) -> Message:
        return self

    def __deepcopy__(self, memo: dict[int, Any]) -> Message:
        return self

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Message):
            return NotImplemented
        return self._is_error == other._is_error and self.as_bytes() == other.as_bytes()

    def __hash__(self) -> int:
        return hash((self._is_error, self.as_bytes()))

    def __repr__(self) -> str:
        if self._is_error:
            return f"Message.error({self.as_string()!r})"
        return f"Message({self.as_bytes()!r})"
