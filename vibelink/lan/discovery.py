"""HTTP sweep discovery for companion editor instances on the LAN.

How it works
------------
1. Work out this machine's IPv4 address and its /24 segment.
2. Build a candidate list: all 254 hosts of the local segment first, then the
   first few hosts of each common private segment, deduplicated.
3. Probe every candidate with ``GET http://<ip>:8766/discover`` using a fixed
   pool of workers, so at most ``max_concurrency`` requests are in flight.
4. A probe that answers 200 with a well-formed discovery document becomes a
   ``ServiceRecord``; every other outcome is a silent miss.

The discovery document:
    {"name": "...", "websocket_url": "ws://...", "version": "...",
     "platform": "...", "app": "..."}
"""

from __future__ import annotations

import asyncio
import ipaddress
import socket
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator

import httpx
from loguru import logger

from vibelink.lan.resilience import notify, supervised_task

NO_INSTANCES_FOUND = (
    "No editor instances found. Make sure the editor is running with the "
    "companion extension enabled."
)

DEFAULT_FALLBACK_SEGMENTS = ("192.168.1", "192.168.0", "10.0.0", "172.16.0")

_DOCUMENT_FIELDS = ("name", "websocket_url", "version", "platform", "app")


@dataclass
class ServiceRecord:
    """A companion editor instance found by a probe."""

    name: str
    host: str
    port: int
    version: str = ""
    platform: str = ""
    app: str = ""
    websocket_url: str = ""  # as advertised; connections use host:port
    id: str = field(default="", compare=False)

    def __post_init__(self) -> None:
        if not self.id:
            self.id = f"{self.host}:{self.port}"

    @property
    def key(self) -> tuple[str, int]:
        return (self.host, self.port)

    @property
    def display_name(self) -> str:
        return self.app or self.name

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"


# ---------------------------------------------------------------------------
# Candidate generation
# ---------------------------------------------------------------------------

def local_ipv4() -> str | None:
    """Best-effort detection of this machine's LAN IPv4 address.

    Tries hostname resolution first, then the address the kernel would use
    to reach a multicast group (no packet is sent). Loopback is rejected.
    """
    try:
        ip = socket.gethostbyname(socket.gethostname())
        if ip and not ip.startswith("127."):
            return ip
    except OSError as exc:
        logger.debug("[Link/Discovery] gethostbyname failed: {}", exc)

    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("224.0.0.1", 1))
            ip = s.getsockname()[0]
        if ip and not ip.startswith("127.") and ip != "0.0.0.0":
            return ip
    except OSError as exc:
        logger.debug("[Link/Discovery] socket probe failed: {}", exc)
    return None


def network_segment(ip: str) -> str | None:
    """Return the first three octets of a valid IPv4 address."""
    try:
        addr = ipaddress.IPv4Address(ip)
    except ValueError:
        return None
    return str(addr).rsplit(".", 1)[0]


def generate_candidates(
    local_ip: str | None,
    fallback_segments: Iterable[str] = DEFAULT_FALLBACK_SEGMENTS,
    per_segment_limit: int = 50,
) -> list[str]:
    """Build the ordered, duplicate-free list of addresses to probe."""
    candidates: list[str] = []
    seen: set[str] = set()

    def add(ip: str) -> None:
        if ip not in seen:
            seen.add(ip)
            candidates.append(ip)

    segment = network_segment(local_ip) if local_ip else None
    if segment:
        for host in range(1, 255):
            add(f"{segment}.{host}")

    for fallback in fallback_segments:
        if network_segment(f"{fallback}.1") != fallback:
            logger.warning("[Link/Discovery] ignoring invalid segment {!r}", fallback)
            continue
        for host in range(1, min(per_segment_limit, 254) + 1):
            add(f"{fallback}.{host}")
    return candidates


def parse_discovery_document(body: Any) -> dict[str, str] | None:
    """Return the discovery fields when *body* matches the schema."""
    if not isinstance(body, dict):
        return None
    if not all(isinstance(body.get(key), str) for key in _DOCUMENT_FIELDS):
        return None
    return {key: body[key] for key in _DOCUMENT_FIELDS}


# ---------------------------------------------------------------------------
# Scanner
# ---------------------------------------------------------------------------

class LANDiscovery:
    """Sweeps candidate addresses for companion editor instances.

    Parameters
    ----------
    discovery_port:
        HTTP port probed on each candidate (default 8766).
    connect_port:
        WebSocket port recorded on discovered services (default 8765).
    max_concurrency:
        Ceiling on simultaneously outstanding probes (default 50).
    connect_timeout / total_timeout:
        Per-probe connect and overall timeouts in seconds.
    fallback_segments / per_segment_limit:
        Extra /24 segments scanned after the local one, each capped.
    local_ip:
        Fixed local address; detected with :func:`local_ipv4` when ``None``.
    transport:
        Optional ``httpx`` transport (tests inject ``httpx.MockTransport``).
    """

    def __init__(
        self,
        discovery_port: int = 8766,
        connect_port: int = 8765,
        max_concurrency: int = 50,
        connect_timeout: float = 2.0,
        total_timeout: float = 5.0,
        fallback_segments: Iterable[str] = DEFAULT_FALLBACK_SEGMENTS,
        per_segment_limit: int = 50,
        local_ip: str | None = None,
        discovery_path: str = "/discover",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.discovery_port = discovery_port
        self.connect_port = connect_port
        self.max_concurrency = max(1, max_concurrency)
        self.timeout = httpx.Timeout(total_timeout, connect=connect_timeout)
        self.fallback_segments = list(fallback_segments)
        self.per_segment_limit = per_segment_limit
        self.local_ip = local_ip
        self.discovery_path = discovery_path
        self._transport = transport

        self.services: list[ServiceRecord] = []
        self.is_scanning = False
        self.error: str | None = None
        self._scan_task: asyncio.Task | None = None
        self._handlers: list[Callable[[], None]] = []

    @classmethod
    def from_config(cls, config: Any, **kwargs: Any) -> "LANDiscovery":
        """Build from a ``DiscoveryConfig``."""
        return cls(
            discovery_port=config.discovery_port,
            connect_port=config.connect_port,
            max_concurrency=config.max_concurrency,
            connect_timeout=config.connect_timeout,
            total_timeout=config.total_timeout,
            fallback_segments=config.fallback_segments,
            per_segment_limit=config.per_segment_limit,
            local_ip=config.local_ip or None,
            discovery_path=config.discovery_path,
            **kwargs,
        )

    def on_change(self, handler: Callable[[], None]) -> None:
        """Register a callback fired after services, scanning flag or error change."""
        self._handlers.append(handler)

    def _changed(self) -> None:
        notify(self._handlers, label="discovery observer")

    # -- lifecycle -----------------------------------------------------------

    def start_scanning(self) -> None:
        """Begin a background scan; no-op while one is running."""
        if self.is_scanning:
            return
        self.error = None
        self.services = []
        self.is_scanning = True
        self._changed()
        self._scan_task = supervised_task(self._run_scan(), name="lan-discovery-scan")

    def stop_scanning(self) -> None:
        """Cancel the running scan; already discovered services are kept."""
        if not self.is_scanning:
            return
        if self._scan_task is not None and not self._scan_task.done():
            self._scan_task.cancel()
        self._scan_task = None
        self.is_scanning = False
        logger.info("[Link/Discovery] scan stopped ({} found)", len(self.services))
        self._changed()

    def refresh(self) -> None:
        self.stop_scanning()
        self.start_scanning()

    async def wait(self) -> None:
        """Wait for the current background scan (if any) to end."""
        task = self._scan_task
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise

    async def _run_scan(self) -> None:
        me = asyncio.current_task()
        try:
            await self.scan()
        finally:
            # A refresh may already have replaced this task
            if self._scan_task is me:
                self._scan_task = None
                self.is_scanning = False
                if not self.services and self.error is None:
                    self.error = NO_INSTANCES_FOUND
                self._changed()

    # -- scanning ------------------------------------------------------------

    def candidates(self, local_ip: str | None = None) -> list[str]:
        return generate_candidates(
            local_ip or self.local_ip, self.fallback_segments, self.per_segment_limit,
        )

    async def scan(self) -> list[ServiceRecord]:
        """Probe every candidate once and return the services found."""
        # Resolver calls block, so detection runs off the event loop
        local_ip = self.local_ip or await asyncio.to_thread(local_ipv4)
        candidates = self.candidates(local_ip)
        logger.info(
            "[Link/Discovery] scanning {} candidates (max {} in flight)",
            len(candidates), self.max_concurrency,
        )
        pending: Iterator[str] = iter(candidates)
        found: list[ServiceRecord] = []

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:

            async def worker() -> None:
                # Shared iterator: a worker takes the next candidate only
                # after its previous probe finished.
                for ip in pending:
                    service = await self.probe(client, ip)
                    if service is not None:
                        found.append(service)
                        self._record(service)

            workers = [
                asyncio.create_task(worker(), name=f"lan-probe-{i}")
                for i in range(min(self.max_concurrency, len(candidates)))
            ]
            try:
                await asyncio.gather(*workers)
            finally:
                for task in workers:
                    task.cancel()
                await asyncio.gather(*workers, return_exceptions=True)

        logger.info("[Link/Discovery] scan finished: {} service(s)", len(found))
        return found

    def _record(self, service: ServiceRecord) -> None:
        if any(s.key == service.key for s in self.services):
            return
        logger.info(
            "[Link/Discovery] found {} {} @ {}:{}",
            service.app, service.version, service.host, service.port,
        )
        self.services.append(service)
        self._changed()

    async def probe(self, client: httpx.AsyncClient, ip: str) -> ServiceRecord | None:
        """Ask one candidate for its discovery document."""
        url = f"http://{ip}:{self.discovery_port}{self.discovery_path}"
        try:
            response = await client.get(url)
            if response.status_code != 200:
                return None
            info = parse_discovery_document(response.json())
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("[Link/Discovery] miss {}: {}", ip, exc)
            return None
        if info is None:
            return None
        return ServiceRecord(
            name=info["name"],
            host=ip,
            port=self.connect_port,
            version=info["version"],
            platform=info["platform"],
            app=info["app"],
            websocket_url=info["websocket_url"],
        )
