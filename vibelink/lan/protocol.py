"""Wire-level protocol spoken with the companion editor.

Every frame is one UTF-8 JSON text message over the WebSocket:

Envelope format
---------------
{
    "type": "EditorStateSync",   # variant discriminator (see MsgType)
    "payload": { ... }           # variant body, omitted for Ping / Pong
}

Decoding is deliberately lenient about *absence*: a payload-bearing variant
without ``payload`` (or with keys missing from it) decodes to that variant's
zero-value defaults, so partial and legacy senders keep working.  It is strict
about *shape*: an unknown ``type``, a non-object payload or a wrongly-typed
field raises :class:`MalformedMessage`.

Heterogeneous fields (``Echo.original``) are carried as :class:`DynamicValue`,
a closed recursive sum type whose classification order is fixed:
null, bool, signed int, uint64, double, string, array, map.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, ClassVar


INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1
UINT32_MAX = 2 ** 32 - 1
UINT64_MAX = 2 ** 64 - 1


class LinkError(Exception):
    """Base class for companion-link errors."""


class MalformedMessage(LinkError, ValueError):
    """A frame could not be decoded into a :class:`WireMessage`."""


class EncodeError(LinkError, TypeError):
    """A native value cannot be represented on the wire."""


# ---------------------------------------------------------------------------
# DynamicValue
# ---------------------------------------------------------------------------

class ValueKind(str, Enum):
    """Primitive kinds a :class:`DynamicValue` can hold."""

    NULL = "null"
    BOOL = "bool"
    INT = "int"          # signed 64-bit
    UINT64 = "uint64"    # only values above INT64_MAX land here
    DOUBLE = "double"
    STRING = "string"
    ARRAY = "array"
    MAP = "map"


def _is_int(raw: Any) -> bool:
    return type(raw) is int and INT64_MIN <= raw <= INT64_MAX


def _is_uint64(raw: Any) -> bool:
    return type(raw) is int and 0 <= raw <= UINT64_MAX


# Strict priority order: first predicate that accepts the raw value wins.
# bool must precede the integer kinds because bool is an int subclass.
_CLASSIFIERS: list[tuple[ValueKind, Callable[[Any], bool]]] = [
    (ValueKind.NULL, lambda raw: raw is None),
    (ValueKind.BOOL, lambda raw: isinstance(raw, bool)),
    (ValueKind.INT, _is_int),
    (ValueKind.UINT64, _is_uint64),
    (ValueKind.DOUBLE, lambda raw: isinstance(raw, float)),
    (ValueKind.STRING, lambda raw: isinstance(raw, str)),
    (ValueKind.ARRAY, lambda raw: isinstance(raw, (list, tuple))),
    (ValueKind.MAP, lambda raw: isinstance(raw, dict) and all(isinstance(k, str) for k in raw)),
]


@dataclass
class DynamicValue:
    """One JSON value of a schema-flexible field.

    ``value`` holds a native scalar for primitive kinds, a ``list`` of
    ``DynamicValue`` for ARRAY and a ``dict[str, DynamicValue]`` for MAP.
    """

    kind: ValueKind
    value: Any = None

    @classmethod
    def classify(cls, raw: Any) -> "DynamicValue":
        """Classify a value produced by ``json.loads``.

        Raises :class:`MalformedMessage` when no kind accepts *raw*.
        """
        kind = _classify_kind(raw)
        if kind is None:
            raise MalformedMessage(f"value of type {type(raw).__name__} cannot be classified")
        if kind is ValueKind.ARRAY:
            return cls(kind, [cls.classify(item) for item in raw])
        if kind is ValueKind.MAP:
            return cls(kind, {key: cls.classify(item) for key, item in raw.items()})
        return cls(kind, raw)

    @classmethod
    def box(cls, native: Any) -> "DynamicValue":
        """Wrap a native Python value for encoding.

        Same classification as :meth:`classify`, but failures raise
        :class:`EncodeError` since they originate on the sending side.
        """
        if isinstance(native, DynamicValue):
            return native
        kind = _classify_kind(native)
        if kind is None:
            raise EncodeError(f"cannot encode value of type {type(native).__name__}")
        if kind is ValueKind.DOUBLE and not math.isfinite(native):
            raise EncodeError(f"cannot encode non-finite float {native!r}")
        if kind is ValueKind.ARRAY:
            return cls(kind, [cls.box(item) for item in native])
        if kind is ValueKind.MAP:
            return cls(kind, {key: cls.box(item) for key, item in native.items()})
        return cls(kind, native)

    def unbox(self) -> Any:
        """Return the plain JSON-compatible Python value."""
        if self.kind is ValueKind.ARRAY:
            return [item.unbox() for item in self.value]
        if self.kind is ValueKind.MAP:
            return {key: item.unbox() for key, item in self.value.items()}
        return self.value


def _classify_kind(raw: Any) -> ValueKind | None:
    for kind, accepts in _CLASSIFIERS:
        if accepts(raw):
            return kind
    return None


def box_map(native: dict[str, Any]) -> dict[str, DynamicValue]:
    """Box every value of a string-keyed map."""
    boxed = DynamicValue.box(native)
    if boxed.kind is not ValueKind.MAP:
        raise EncodeError("expected a string-keyed map")
    return boxed.value


# ---------------------------------------------------------------------------
# Message variants
# ---------------------------------------------------------------------------

class MsgType(str, Enum):
    """Recognised wire message types."""

    # Handshake
    CONNECTION_REQUEST = "ConnectionRequest"
    CONNECTION_ACCEPTED = "ConnectionAccepted"
    CONNECTION_REJECTED = "ConnectionRejected"
    # Editor mirroring
    EDITOR_STATE_SYNC = "EditorStateSync"
    # Liveness
    PING = "Ping"
    PONG = "Pong"
    # Diagnostics
    ECHO = "Echo"


def _field(payload: dict[str, Any], key: str, expected: type, default: Any) -> Any:
    if key not in payload or (default is None and payload[key] is None):
        return default
    value = payload[key]
    # bool is an int subclass
    if isinstance(value, bool) or not isinstance(value, expected):
        raise MalformedMessage(f"field {key!r} has type {type(value).__name__}")
    return value


def _uint(payload: dict[str, Any], key: str, maximum: int) -> int:
    value = _field(payload, key, int, 0)
    if not 0 <= value <= maximum:
        raise MalformedMessage(f"field {key!r} out of range: {value}")
    return value


def _object(value: Any, what: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise MalformedMessage(f"{what} must be an object, got {type(value).__name__}")
    return value


class WireMessage:
    """Base for every protocol variant.

    Subclasses set ``TYPE`` and implement ``to_payload`` / ``from_payload``.
    Variants without a body leave ``HAS_PAYLOAD`` false.
    """

    TYPE: ClassVar[MsgType]
    HAS_PAYLOAD: ClassVar[bool] = True

    def to_payload(self) -> dict[str, Any]:
        return {}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "WireMessage":
        return cls()

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"type": self.TYPE.value}
        if self.HAS_PAYLOAD:
            d["payload"] = self.to_payload()
        return d


@dataclass
class ConnectionRequest(WireMessage):
    TYPE: ClassVar[MsgType] = MsgType.CONNECTION_REQUEST

    device_name: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {"device_name": self.device_name}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ConnectionRequest":
        return cls(device_name=_field(payload, "device_name", str, ""))


@dataclass
class ServerInfo:
    """Identity the editor reports when accepting a connection."""

    name: str = ""
    version: str = ""
    platform: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "version": self.version, "platform": self.platform}

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> "ServerInfo":
        return cls(
            name=_field(obj, "name", str, ""),
            version=_field(obj, "version", str, ""),
            platform=_field(obj, "platform", str, ""),
        )


@dataclass
class ConnectionAccepted(WireMessage):
    TYPE: ClassVar[MsgType] = MsgType.CONNECTION_ACCEPTED

    connection_id: str = ""
    server_info: ServerInfo = field(default_factory=ServerInfo)

    def to_payload(self) -> dict[str, Any]:
        # Mixed-type map: boxed so unsupported values fail at encode time
        boxed = box_map({
            "connection_id": self.connection_id,
            "server_info": self.server_info.to_dict(),
        })
        return {key: value.unbox() for key, value in boxed.items()}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ConnectionAccepted":
        info = payload.get("server_info")
        return cls(
            connection_id=_field(payload, "connection_id", str, ""),
            server_info=ServerInfo() if info is None else ServerInfo.from_dict(_object(info, "server_info")),
        )


@dataclass
class ConnectionRejected(WireMessage):
    TYPE: ClassVar[MsgType] = MsgType.CONNECTION_REJECTED

    reason: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {"reason": self.reason}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ConnectionRejected":
        return cls(reason=_field(payload, "reason", str, ""))


@dataclass
class EditorState:
    """Snapshot of the remote editor's focused buffer."""

    file_path: str | None = None
    cursor_line: int = 0
    cursor_column: int = 0
    content_preview: str = ""

    @property
    def file_name(self) -> str:
        """Last path component of ``file_path`` (``"Unknown"`` without one)."""
        if not self.file_path:
            return "Unknown"
        return self.file_path.rsplit("/", 1)[-1]

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_path": self.file_path,
            "cursor_line": self.cursor_line,
            "cursor_column": self.cursor_column,
            "content_preview": self.content_preview,
        }

    @classmethod
    def from_dict(cls, obj: dict[str, Any]) -> "EditorState":
        return cls(
            file_path=_field(obj, "file_path", str, None),
            cursor_line=_uint(obj, "cursor_line", UINT32_MAX),
            cursor_column=_uint(obj, "cursor_column", UINT32_MAX),
            content_preview=_field(obj, "content_preview", str, ""),
        )


@dataclass
class EditorStateSync(WireMessage):
    TYPE: ClassVar[MsgType] = MsgType.EDITOR_STATE_SYNC

    state: EditorState = field(default_factory=EditorState)

    def to_payload(self) -> dict[str, Any]:
        return self.state.to_dict()

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "EditorStateSync":
        return cls(state=EditorState.from_dict(payload))


@dataclass
class Ping(WireMessage):
    TYPE: ClassVar[MsgType] = MsgType.PING
    HAS_PAYLOAD: ClassVar[bool] = False


@dataclass
class Pong(WireMessage):
    TYPE: ClassVar[MsgType] = MsgType.PONG
    HAS_PAYLOAD: ClassVar[bool] = False


@dataclass
class Echo(WireMessage):
    TYPE: ClassVar[MsgType] = MsgType.ECHO

    original: dict[str, DynamicValue] = field(default_factory=dict)
    timestamp: int = 0

    def to_payload(self) -> dict[str, Any]:
        if not 0 <= self.timestamp <= UINT64_MAX:
            raise EncodeError(f"timestamp out of uint64 range: {self.timestamp}")
        return {
            "original": DynamicValue(ValueKind.MAP, box_map(self.original)).unbox(),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Echo":
        original = payload.get("original")
        boxed = DynamicValue.classify({} if original is None else _object(original, "original"))
        return cls(original=boxed.value, timestamp=_uint(payload, "timestamp", UINT64_MAX))


_VARIANTS: dict[str, type[WireMessage]] = {
    cls.TYPE.value: cls
    for cls in (
        ConnectionRequest,
        ConnectionAccepted,
        ConnectionRejected,
        EditorStateSync,
        Ping,
        Pong,
        Echo,
    )
}


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------

def decode(frame: str | bytes) -> WireMessage:
    """Decode one text frame into its :class:`WireMessage` variant."""
    try:
        obj = json.loads(frame)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedMessage(f"invalid JSON: {exc}") from exc
    except RecursionError as exc:
        raise MalformedMessage("frame nested too deeply") from exc
    envelope = _object(obj, "envelope")

    msg_type = envelope.get("type")
    if not isinstance(msg_type, str):
        raise MalformedMessage("missing message type")
    cls = _VARIANTS.get(msg_type)
    if cls is None:
        raise MalformedMessage(f"unknown message type {msg_type!r}")

    if not cls.HAS_PAYLOAD:
        return cls()
    payload = envelope.get("payload")
    if payload is None:
        return cls()
    try:
        return cls.from_payload(_object(payload, "payload"))
    except RecursionError as exc:
        raise MalformedMessage("payload nested too deeply") from exc


def encode(message: WireMessage) -> str:
    """Encode *message* as a JSON text frame."""
    try:
        return json.dumps(message.to_dict(), ensure_ascii=False, allow_nan=False)
    except ValueError as exc:
        raise EncodeError(str(exc)) from exc
