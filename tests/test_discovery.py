"""Tests for LAN discovery: candidate generation, probing and scan lifecycle."""

from __future__ import annotations

import asyncio
import socket
import time
from unittest.mock import MagicMock, patch

import httpx
import pytest

from vibelink.config.schema import DiscoveryConfig
from vibelink.lan.discovery import (
    NO_INSTANCES_FOUND,
    LANDiscovery,
    ServiceRecord,
    generate_candidates,
    local_ipv4,
    network_segment,
    parse_discovery_document,
)

DOC = {
    "name": "Zed Vision",
    "websocket_url": "ws://192.168.1.5:8765",
    "version": "0.2.0",
    "platform": "macOS",
    "app": "Zed",
}


def _mock_transport(hosts: dict[str, httpx.Response | Exception]) -> httpx.MockTransport:
    """Answer probes from *hosts*; every other address refuses the connection."""

    def handler(request: httpx.Request) -> httpx.Response:
        result = hosts.get(request.url.host)
        if result is None:
            raise httpx.ConnectError("connection refused", request=request)
        if isinstance(result, Exception):
            raise result
        return result

    return httpx.MockTransport(handler)


def _discovery(transport: httpx.MockTransport, **kwargs) -> LANDiscovery:
    kwargs.setdefault("local_ip", "192.168.1.42")
    kwargs.setdefault("fallback_segments", [])
    return LANDiscovery(transport=transport, **kwargs)


# ---------------------------------------------------------------------------
# Candidate generation
# ---------------------------------------------------------------------------


class TestCandidates:
    def test_local_segment_first_and_complete(self):
        candidates = generate_candidates("192.168.1.42")
        assert candidates[:254] == [f"192.168.1.{i}" for i in range(1, 255)]

    def test_no_duplicates_from_fallback_segments(self):
        candidates = generate_candidates("192.168.1.42")
        assert len(candidates) == len(set(candidates))
        # 254 local + 50 each for the three other fallback segments
        assert len(candidates) == 254 + 3 * 50

    def test_fallback_segments_are_capped(self):
        candidates = generate_candidates("10.9.9.9", ["192.168.0"], per_segment_limit=10)
        fallback = [ip for ip in candidates if ip.startswith("192.168.0.")]
        assert fallback == [f"192.168.0.{i}" for i in range(1, 11)]

    def test_unknown_local_ip_uses_fallbacks_only(self):
        candidates = generate_candidates(None)
        assert len(candidates) == 4 * 50
        assert candidates[0] == "192.168.1.1"

    def test_invalid_local_ip_is_ignored(self):
        assert generate_candidates("not-an-ip", []) == []

    def test_large_candidate_list(self):
        assert len(generate_candidates("10.1.2.3")) == 254 + 4 * 50

    def test_invalid_fallback_segments_are_skipped(self):
        candidates = generate_candidates(None, ["abc", "10.0.0", "300.1.1", "10.0"], per_segment_limit=2)
        assert candidates == ["10.0.0.1", "10.0.0.2"]

    def test_network_segment(self):
        assert network_segment("172.16.4.20") == "172.16.4"
        assert network_segment("300.1.1.1") is None


class TestLocalIPv4:
    def test_hostname_resolution(self):
        with patch("vibelink.lan.discovery.socket.gethostbyname", return_value="192.168.3.7"):
            assert local_ipv4() == "192.168.3.7"

    def test_loopback_falls_back_to_socket(self):
        sock = MagicMock()
        sock.__enter__.return_value = sock
        sock.getsockname.return_value = ("10.0.0.8", 5000)
        with patch("vibelink.lan.discovery.socket.gethostbyname", return_value="127.0.1.1"), \
                patch("vibelink.lan.discovery.socket.socket", return_value=sock):
            assert local_ipv4() == "10.0.0.8"

    def test_nothing_found(self):
        with patch("vibelink.lan.discovery.socket.gethostbyname", side_effect=socket.gaierror), \
                patch("vibelink.lan.discovery.socket.socket", side_effect=OSError("no network")):
            assert local_ipv4() is None


# ---------------------------------------------------------------------------
# Probing
# ---------------------------------------------------------------------------


class TestDiscoveryDocument:
    def test_valid(self):
        assert parse_discovery_document(DOC) == DOC

    def test_missing_field(self):
        doc = dict(DOC)
        del doc["app"]
        assert parse_discovery_document(doc) is None

    def test_wrong_type(self):
        assert parse_discovery_document({**DOC, "version": 2}) is None
        assert parse_discovery_document(["not", "an", "object"]) is None


class TestProbe:
    @pytest.mark.asyncio
    async def test_success_builds_record(self):
        transport = _mock_transport({"192.168.1.5": httpx.Response(200, json=DOC)})
        disc = _discovery(transport)
        async with httpx.AsyncClient(transport=transport) as client:
            service = await disc.probe(client, "192.168.1.5")
        assert service == ServiceRecord(
            name="Zed Vision", host="192.168.1.5", port=8765, version="0.2.0",
            platform="macOS", app="Zed", websocket_url="ws://192.168.1.5:8765",
        )
        assert service.url == "ws://192.168.1.5:8765"
        assert service.display_name == "Zed"
        assert service.id == "192.168.1.5:8765"

    @pytest.mark.asyncio
    async def test_requests_discovery_path(self):
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json=DOC)

        transport = httpx.MockTransport(handler)
        disc = _discovery(transport, discovery_port=9000)
        async with httpx.AsyncClient(transport=transport) as client:
            await disc.probe(client, "10.0.0.3")
        assert seen == ["http://10.0.0.3:9000/discover"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "outcome",
        [
            httpx.Response(404, json=DOC),
            httpx.Response(500),
            httpx.Response(200, text="<html>router login</html>"),
            httpx.Response(200, json={"name": "something else"}),
            httpx.ReadTimeout("slow"),
        ],
    )
    async def test_misses_are_silent(self, outcome):
        transport = _mock_transport({"192.168.1.9": outcome})
        disc = _discovery(transport)
        async with httpx.AsyncClient(transport=transport) as client:
            assert await disc.probe(client, "192.168.1.9") is None

    @pytest.mark.asyncio
    async def test_refused_is_silent(self):
        transport = _mock_transport({})
        disc = _discovery(transport)
        async with httpx.AsyncClient(transport=transport) as client:
            assert await disc.probe(client, "192.168.1.10") is None


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------


class TestScan:
    @pytest.mark.asyncio
    async def test_scan_collects_hits(self):
        transport = _mock_transport({
            "192.168.1.5": httpx.Response(200, json=DOC),
            "192.168.1.77": httpx.Response(200, json={**DOC, "app": "Zed Preview"}),
        })
        disc = _discovery(transport)
        found = await disc.scan()
        assert sorted(s.host for s in found) == ["192.168.1.5", "192.168.1.77"]
        assert sorted(s.host for s in disc.services) == ["192.168.1.5", "192.168.1.77"]

    @pytest.mark.asyncio
    async def test_concurrency_ceiling(self):
        disc = _discovery(
            _mock_transport({}),
            local_ip="10.1.2.3",
            fallback_segments=["192.168.1", "192.168.0", "10.0.0", "172.16.0"],
            max_concurrency=50,
        )
        assert len(disc.candidates()) > 450

        in_flight = 0
        peak = 0
        probed: list[str] = []

        async def fake_probe(client, ip):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.001)
            in_flight -= 1
            probed.append(ip)
            return None

        disc.probe = fake_probe
        await disc.scan()
        assert peak == 50
        assert len(probed) == len(disc.candidates())
        assert in_flight == 0

    @pytest.mark.asyncio
    async def test_address_detection_does_not_block_loop(self):
        def slow_resolver(_):
            time.sleep(0.3)
            return "192.168.1.42"

        disc = _discovery(_mock_transport({}), local_ip=None)
        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                await asyncio.sleep(0.02)
                ticks += 1

        with patch("vibelink.lan.discovery.socket.gethostbyname", side_effect=slow_resolver):
            counter = asyncio.create_task(ticker())
            await disc.scan()
            counter.cancel()

        assert ticks >= 5

    @pytest.mark.asyncio
    async def test_duplicate_host_port_recorded_once(self):
        disc = _discovery(_mock_transport({}))
        record = ServiceRecord(name="a", host="192.168.1.5", port=8765)
        disc._record(record)
        disc._record(ServiceRecord(name="b", host="192.168.1.5", port=8765))
        assert disc.services == [record]

    def test_from_config(self):
        config = DiscoveryConfig(max_concurrency=8, local_ip="10.0.0.2", per_segment_limit=5)
        disc = LANDiscovery.from_config(config)
        assert disc.max_concurrency == 8
        assert disc.local_ip == "10.0.0.2"
        assert disc.per_segment_limit == 5
        assert disc.timeout.connect == 2.0


class TestScanLifecycle:
    @pytest.mark.asyncio
    async def test_start_scanning_runs_to_completion(self):
        transport = _mock_transport({"192.168.1.5": httpx.Response(200, json=DOC)})
        disc = _discovery(transport)
        changes = MagicMock()
        disc.on_change(changes)

        disc.start_scanning()
        assert disc.is_scanning
        await disc.wait()

        assert not disc.is_scanning
        assert [s.host for s in disc.services] == ["192.168.1.5"]
        assert disc.error is None
        assert changes.call_count >= 3  # started, found, finished

    @pytest.mark.asyncio
    async def test_empty_scan_sets_single_error(self):
        disc = _discovery(_mock_transport({}))
        disc.start_scanning()
        await disc.wait()
        assert disc.services == []
        assert disc.error == NO_INSTANCES_FOUND

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        disc = _discovery(_mock_transport({}))
        disc.start_scanning()
        first = disc._scan_task
        disc.start_scanning()
        assert disc._scan_task is first
        disc.stop_scanning()

    @pytest.mark.asyncio
    async def test_start_clears_previous_results(self):
        disc = _discovery(_mock_transport({}))
        disc.services = [ServiceRecord(name="old", host="10.0.0.1", port=8765)]
        disc.error = "stale"
        disc.start_scanning()
        assert disc.services == []
        assert disc.error is None
        disc.stop_scanning()

    @pytest.mark.asyncio
    async def test_stop_cancels_probes_and_keeps_results(self):
        disc = _discovery(_mock_transport({}), max_concurrency=10)
        started = 0
        cancelled = 0

        async def fake_probe(client, ip):
            nonlocal started, cancelled
            started += 1
            if ip == "192.168.1.1":
                return ServiceRecord(name="Zed", host=ip, port=8765)
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled += 1
                raise

        disc.probe = fake_probe
        disc.start_scanning()
        task = disc._scan_task
        for _ in range(10):
            await asyncio.sleep(0)

        disc.stop_scanning()
        assert not disc.is_scanning
        with pytest.raises(asyncio.CancelledError):
            await task

        # worker one moved on to .2 after its hit; every worker ends up blocked
        assert started == 11
        assert cancelled == 10
        assert [s.host for s in disc.services] == ["192.168.1.1"]
        assert disc.error is None

    @pytest.mark.asyncio
    async def test_stop_when_idle_is_noop(self):
        disc = _discovery(_mock_transport({}))
        disc.stop_scanning()
        assert not disc.is_scanning

    @pytest.mark.asyncio
    async def test_refresh_restarts_scan(self):
        disc = _discovery(_mock_transport({}))
        disc.start_scanning()
        first = disc._scan_task
        disc.refresh()
        assert disc.is_scanning
        assert disc._scan_task is not first
        await disc.wait()
        assert not disc.is_scanning
        assert disc.error == NO_INSTANCES_FOUND
