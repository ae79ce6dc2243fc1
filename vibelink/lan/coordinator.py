"""Single facade the UI layer talks to.

Composes :class:`LANDiscovery` and :class:`ConnectionClient`, mirrors their
state into one place and caches the latest remote editor snapshot.  Both
collaborators are constructed explicitly and injected; nothing here is a
process-wide singleton.
"""

from __future__ import annotations

from typing import Any, Callable

from loguru import logger

from vibelink.config.schema import LinkConfig
from vibelink.lan.client import ConnectionClient, ConnectionState, StateKind
from vibelink.lan.discovery import LANDiscovery, ServiceRecord
from vibelink.lan.protocol import EditorState, EditorStateSync, WireMessage
from vibelink.lan.resilience import notify

# Change topics passed to on_change() handlers
SERVICES = "services"
STATE = "state"
EDITOR_STATE = "editor_state"
ERROR = "error"

ChangeHandler = Callable[[str], None]


class ConnectionCoordinator:
    """Discovery + connection + editor mirror behind one object."""

    def __init__(self, discovery: LANDiscovery, client: ConnectionClient):
        self.discovery = discovery
        self.client = client
        self.selected_service: ServiceRecord | None = None
        self.editor_state: EditorState | None = None
        self.last_error: str | None = None
        self._discovery_error: str | None = None
        self._handlers: list[ChangeHandler] = []

        discovery.on_change(self._on_discovery_change)
        client.on_state_change(self._on_state_change)
        client.on_message(self._on_message)

    @classmethod
    def from_config(
        cls,
        config: LinkConfig | None = None,
        *,
        discovery_kwargs: dict[str, Any] | None = None,
        client_kwargs: dict[str, Any] | None = None,
    ) -> "ConnectionCoordinator":
        """Build discovery and client from *config* (defaults when ``None``).

        The extra kwargs are forwarded to the collaborators' ``from_config``
        (e.g. an ``httpx`` transport or a WebSocket connector).
        """
        config = config or LinkConfig()
        discovery = LANDiscovery.from_config(config.discovery, **(discovery_kwargs or {}))
        client = ConnectionClient.from_config(config.connection, **(client_kwargs or {}))
        return cls(discovery, client)

    def on_change(self, handler: ChangeHandler) -> None:
        """Register a callback receiving the topic that changed."""
        self._handlers.append(handler)

    def _changed(self, topic: str) -> None:
        notify(self._handlers, topic, label="coordinator observer")

    # -- read-only view ------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self.client.state

    @property
    def services(self) -> list[ServiceRecord]:
        return list(self.discovery.services)

    @property
    def is_scanning(self) -> bool:
        return self.discovery.is_scanning

    @property
    def is_connected(self) -> bool:
        return self.state.is_connected

    @property
    def status_text(self) -> str:
        if self.selected_service is not None:
            return f"{self.state.description} - {self.selected_service.display_name}"
        return self.state.description

    @property
    def current_file_info(self) -> str:
        state = self.editor_state
        if state is None:
            return "No file open"
        return f"{state.file_name} - Line {state.cursor_line}, Column {state.cursor_column}"

    # -- discovery -----------------------------------------------------------

    def start_scanning(self) -> None:
        self.discovery.start_scanning()

    def stop_scanning(self) -> None:
        self.discovery.stop_scanning()

    def refresh(self) -> None:
        self.discovery.refresh()

    # -- connection ----------------------------------------------------------

    async def connect(self, service: ServiceRecord) -> None:
        """Select *service* and open a session to it."""
        self.selected_service = service
        self.clear_error()
        await self.client.connect(service)

    async def reconnect(self) -> None:
        """Re-open the session to the selected service (caller-driven retry)."""
        if self.selected_service is None:
            logger.debug("[Link/Coordinator] reconnect without a selected service")
            return
        self.clear_error()
        await self.client.connect(self.selected_service, reconnecting=True)

    def disconnect(self) -> None:
        self.client.disconnect()
        self.selected_service = None
        if self.editor_state is not None:
            self.editor_state = None
            self._changed(EDITOR_STATE)

    def clear_error(self) -> None:
        if self.last_error is not None:
            self.last_error = None
            self._changed(ERROR)

    # -- collaborator events -------------------------------------------------

    def _on_discovery_change(self) -> None:
        error = self.discovery.error
        if error and error != self.last_error:
            self.last_error = error
            self._changed(ERROR)
        elif error is None and self.last_error == self._discovery_error:
            # Discovery cleared its message; a connection failure stays
            self.clear_error()
        self._discovery_error = error
        self._changed(SERVICES)

    def _on_state_change(self, state: ConnectionState) -> None:
        if state.kind is StateKind.FAILED:
            self.last_error = state.reason
            self._changed(ERROR)
        self._changed(STATE)

    def _on_message(self, message: WireMessage) -> None:
        if isinstance(message, EditorStateSync):
            self.editor_state = message.state
            self._changed(EDITOR_STATE)
        else:
            # Other variants are observed only
            logger.debug("[Link/Coordinator] ignoring {}", message.TYPE.value)
