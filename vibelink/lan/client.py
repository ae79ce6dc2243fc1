"""Persistent WebSocket session with a companion editor.

State machine
-------------
    DISCONNECTED ──connect()──▶ CONNECTING ──ack──▶ CONNECTED
                                    │                  │
                                    └──error──▶ FAILED ◀┘ (receive/send error)
    CONNECTED ──peer closes──▶ DISCONNECTED
    any state ──disconnect()──▶ DISCONNECTED

The acknowledgement is either a ``ConnectionAccepted`` frame or, for legacy
editors, a plain-text frame containing ``"hello"``.  A heartbeat ``Ping`` is
sent every ``heartbeat_interval`` seconds while CONNECTED and only then.

Each ``connect()`` bumps a generation counter; background work (open, receive
loop, pending sends) started for an older generation never touches state, so
only the newest transport is ever live.  Reconnection policy is left to the
caller.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable
from urllib.parse import urlsplit

from loguru import logger
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException

from vibelink.lan.discovery import ServiceRecord
from vibelink.lan.protocol import (
    ConnectionAccepted,
    ConnectionRejected,
    ConnectionRequest,
    LinkError,
    MalformedMessage,
    Ping,
    Pong,
    ServerInfo,
    WireMessage,
    decode,
    encode,
)
from vibelink.lan.resilience import Watchdog, notify, supervised_task

GREETING = "hello"

# Network failures that end an attempt through FAILED rather than an exception
_TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)

StateHandler = Callable[["ConnectionState"], None]
MessageHandler = Callable[[WireMessage], None]
Connector = Callable[..., Awaitable[Any]]


class AddressError(LinkError, ValueError):
    """The connection target is not a usable WebSocket address."""


class StateKind(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass(frozen=True)
class ConnectionState:
    """Current phase of the session; ``reason`` is set only for FAILED."""

    kind: StateKind = StateKind.DISCONNECTED
    reason: str = ""

    @classmethod
    def failed(cls, reason: str) -> "ConnectionState":
        return cls(StateKind.FAILED, reason)

    @property
    def is_connected(self) -> bool:
        return self.kind is StateKind.CONNECTED

    @property
    def is_handshaking(self) -> bool:
        return self.kind in (StateKind.CONNECTING, StateKind.RECONNECTING)

    @property
    def description(self) -> str:
        if self.kind is StateKind.FAILED:
            return f"Failed: {self.reason}"
        if self.is_handshaking:
            return f"{self.kind.value.capitalize()}..."
        return self.kind.value.capitalize()


DISCONNECTED = ConnectionState(StateKind.DISCONNECTED)
CONNECTING = ConnectionState(StateKind.CONNECTING)
CONNECTED = ConnectionState(StateKind.CONNECTED)
RECONNECTING = ConnectionState(StateKind.RECONNECTING)


def resolve_url(target: ServiceRecord | str) -> str:
    """Return the WebSocket URL for *target* or raise :class:`AddressError`."""
    if isinstance(target, ServiceRecord):
        if not target.host or not 0 < target.port < 65536:
            raise AddressError(f"invalid service address {target.host!r}:{target.port}")
        url = target.url
    else:
        url = str(target)
    parts = urlsplit(url)
    if parts.scheme not in ("ws", "wss") or not parts.hostname or any(c.isspace() for c in parts.netloc):
        raise AddressError(f"invalid WebSocket URL {url!r}")
    try:
        parts.port
    except ValueError as exc:
        raise AddressError(f"invalid WebSocket URL {url!r}: {exc}") from exc
    return url


def is_greeting(text: str) -> bool:
    """True for a legacy plain-text acknowledgement (non-JSON, contains "hello")."""
    if GREETING not in text:
        return False
    try:
        json.loads(text)
    except ValueError:
        return True
    except RecursionError:
        return False
    return False


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class ConnectionClient:
    """Owns at most one WebSocket to the editor and runs its state machine.

    Parameters
    ----------
    device_name:
        Name sent in a structured ``ConnectionRequest``.
    handshake:
        ``"hello"`` sends the legacy plain-text greeting, ``"structured"``
        sends ``ConnectionRequest``. Either acknowledgement is accepted.
    heartbeat_interval:
        Seconds between ``Ping`` frames while connected.
    open_timeout / send_timeout / close_timeout:
        Bounds on opening the socket, writing one frame and closing.
    connector:
        Coroutine factory used to open the socket (defaults to
        ``websockets.asyncio.client.connect``); tests inject a fake.
    """

    def __init__(
        self,
        device_name: str = "vibelink",
        handshake: str = "hello",
        heartbeat_interval: float = 30.0,
        open_timeout: float = 15.0,
        send_timeout: float = 10.0,
        close_timeout: float = 2.0,
        connector: Connector | None = None,
    ):
        self.device_name = device_name
        self.handshake = handshake
        self.open_timeout = open_timeout
        self.send_timeout = send_timeout
        self.close_timeout = close_timeout
        self._connector = connector or ws_connect

        self.state: ConnectionState = DISCONNECTED
        self.connection_id: str | None = None
        self.server_info: ServerInfo | None = None
        self.url: str | None = None

        self._ws: Any = None
        self._opening: asyncio.Task | None = None
        self._receive_task: asyncio.Task | None = None
        self._closing: set[asyncio.Task] = set()
        self._generation = 0
        self.heartbeat = Watchdog("heartbeat", self._send_ping, interval=heartbeat_interval)

        self._state_handlers: list[StateHandler] = []
        self._message_handlers: list[MessageHandler] = []

    @classmethod
    def from_config(cls, config: Any, **kwargs: Any) -> "ConnectionClient":
        """Build from a ``ConnectionConfig``."""
        return cls(
            device_name=config.device_name,
            handshake=config.handshake,
            heartbeat_interval=config.heartbeat_interval,
            open_timeout=config.open_timeout,
            send_timeout=config.send_timeout,
            close_timeout=config.close_timeout,
            **kwargs,
        )

    # -- observers -----------------------------------------------------------

    def on_state_change(self, handler: StateHandler) -> None:
        self._state_handlers.append(handler)

    def on_message(self, handler: MessageHandler) -> None:
        """Register a callback invoked for every decoded inbound message."""
        self._message_handlers.append(handler)

    @property
    def transport(self) -> Any:
        """The live WebSocket, or ``None``."""
        return self._ws

    # -- lifecycle -----------------------------------------------------------

    async def connect(self, target: ServiceRecord | str, *, reconnecting: bool = False) -> None:
        """Retire any current transport and open a new one to *target*.

        Returns once the handshake frame is sent (or the attempt failed); the
        state stays CONNECTING until the editor acknowledges.
        """
        url = resolve_url(target)
        self._generation += 1
        generation = self._generation

        previous = self._detach()
        if previous is not None:
            await self._close_transport(previous)
        if generation != self._generation:
            return

        self.url = url
        self._set_state(RECONNECTING if reconnecting else CONNECTING)
        logger.info("[Link/Client] connecting to {}", url)

        opening = asyncio.create_task(self._open(url), name="link-open")
        self._opening = opening
        try:
            ws = await opening
        except asyncio.CancelledError:
            if generation != self._generation:
                return  # superseded by a newer connect() or disconnect()
            self._retire(DISCONNECTED)
            raise
        except _TRANSPORT_ERRORS as exc:
            if generation == self._generation:
                logger.warning("[Link/Client] failed to open {}: {}", url, exc)
                self._retire(ConnectionState.failed(_describe(exc)))
            return
        finally:
            if self._opening is opening:
                self._opening = None

        if generation != self._generation:
            await self._close_transport(ws)
            return

        self._ws = ws
        self._receive_task = supervised_task(
            self._receive_loop(ws, generation), name="link-receive",
        )
        try:
            await asyncio.wait_for(ws.send(self._handshake_frame()), timeout=self.send_timeout)
        except _TRANSPORT_ERRORS as exc:
            if generation == self._generation:
                logger.warning("[Link/Client] handshake to {} failed: {}", url, exc)
                self._retire(ConnectionState.failed(_describe(exc)))

    def disconnect(self) -> None:
        """Drop the session immediately; closing finishes in the background."""
        if self.state == DISCONNECTED and self._ws is None and self._opening is None:
            return
        self._retire(DISCONNECTED)
        logger.info("[Link/Client] disconnected")

    async def aclose(self) -> None:
        """Disconnect and wait for pending transport closes."""
        self.disconnect()
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

    async def _open(self, url: str) -> Any:
        return await self._connector(
            url, open_timeout=self.open_timeout, close_timeout=self.close_timeout,
        )

    def _handshake_frame(self) -> str:
        if self.handshake == "structured":
            return encode(ConnectionRequest(device_name=self.device_name))
        return GREETING

    def _detach(self) -> Any:
        """Stop all work bound to the current transport and hand it back."""
        self.heartbeat.stop()
        if self._opening is not None and not self._opening.done():
            self._opening.cancel()
        self._opening = None
        task = self._receive_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._receive_task = None
        ws, self._ws = self._ws, None
        self.connection_id = None
        self.server_info = None
        return ws

    def _retire(self, state: ConnectionState) -> None:
        self._generation += 1
        ws = self._detach()
        if ws is not None:
            task = supervised_task(self._close_transport(ws), name="link-close")
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)
        self._set_state(state)

    async def _close_transport(self, ws: Any) -> None:
        try:
            await asyncio.wait_for(ws.close(), timeout=self.close_timeout)
        except _TRANSPORT_ERRORS as exc:
            logger.debug("[Link/Client] close error: {}", exc)

    def _set_state(self, state: ConnectionState) -> None:
        previous = self.state
        if state == previous:
            return
        self.state = state
        # Heartbeat lifetime is bound to CONNECTED
        if state.is_connected and not previous.is_connected:
            self.heartbeat.start()
        elif previous.is_connected and not state.is_connected:
            self.heartbeat.stop()
        logger.debug("[Link/Client] {} -> {}", previous.description, state.description)
        notify(self._state_handlers, state, label="state observer")

    # -- receiving -----------------------------------------------------------

    async def _receive_loop(self, ws: Any, generation: int) -> None:
        try:
            while True:
                frame = await ws.recv()
                if generation != self._generation:
                    return
                await self._handle_frame(frame)
        except ConnectionClosedOK:
            if generation == self._generation:
                logger.info("[Link/Client] connection closed by editor")
                self._retire(DISCONNECTED)
        except (ConnectionClosed, OSError) as exc:
            if generation == self._generation:
                logger.warning("[Link/Client] receive error: {}", exc)
                self._retire(ConnectionState.failed(_describe(exc)))
        except Exception as exc:
            if generation == self._generation:
                logger.exception("[Link/Client] receive loop crashed")
                self._retire(ConnectionState.failed(_describe(exc)))

    async def _handle_frame(self, frame: str | bytes) -> None:
        text = frame.decode("utf-8", errors="replace") if isinstance(frame, bytes) else frame
        try:
            message = decode(text)
        except MalformedMessage as exc:
            if self.state.is_handshaking and is_greeting(text):
                logger.info("[Link/Client] connected (plain-text greeting)")
                self._set_state(CONNECTED)
                return
            logger.warning("[Link/Client] dropped malformed frame: {}", exc)
            return
        await self._dispatch(message)

    async def _dispatch(self, message: WireMessage) -> None:
        logger.debug("[Link/Client] received {}", message.TYPE.value)
        if isinstance(message, ConnectionAccepted):
            self.connection_id = message.connection_id
            self.server_info = message.server_info
            if not self.state.is_connected:
                logger.info(
                    "[Link/Client] connected to {} {} (id={})",
                    message.server_info.name, message.server_info.version,
                    message.connection_id,
                )
                self._set_state(CONNECTED)
        elif isinstance(message, Ping):
            await self.send(Pong())

        notify(self._message_handlers, message, label="message handler")

        if isinstance(message, ConnectionRejected) and self.state.is_handshaking:
            logger.warning("[Link/Client] connection rejected: {}", message.reason)
            self._retire(ConnectionState.failed(f"Connection rejected: {message.reason}"))

    # -- sending -------------------------------------------------------------

    async def send(self, message: WireMessage) -> bool:
        """Send one message; returns ``False`` unless CONNECTED and written."""
        if not self.state.is_connected or self._ws is None:
            logger.debug("[Link/Client] not connected, dropping {}", message.TYPE.value)
            return False
        text = encode(message)
        ws, generation = self._ws, self._generation
        try:
            await asyncio.wait_for(ws.send(text), timeout=self.send_timeout)
        except _TRANSPORT_ERRORS as exc:
            if generation == self._generation:
                logger.warning("[Link/Client] send {} failed: {}", message.TYPE.value, exc)
                self._retire(ConnectionState.failed(_describe(exc)))
            return False
        return True

    async def _send_ping(self) -> None:
        await self.send(Ping())
