"""Configuration schema using Pydantic."""

from typing import Literal

from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DiscoveryConfig(Base):
    """LAN scan for companion editor instances."""

    discovery_port: int = 8766      # HTTP port serving the discovery document
    discovery_path: str = "/discover"
    connect_port: int = 8765        # WebSocket port advertised to discovered services
    max_concurrency: int = Field(default=50, ge=1)  # Probes in flight at once
    connect_timeout: float = 2.0    # Seconds to establish a probe connection
    total_timeout: float = 5.0      # Seconds for a whole probe request
    # Extra /24 segments scanned after the local one; each capped to per_segment_limit hosts
    fallback_segments: list[str] = Field(
        default_factory=lambda: ["192.168.1", "192.168.0", "10.0.0", "172.16.0"]
    )
    per_segment_limit: int = Field(default=50, ge=0, le=254)
    local_ip: str = ""              # Override local IPv4 detection (empty = auto)


class ConnectionConfig(Base):
    """WebSocket session with the companion editor."""

    device_name: str = "vibelink"   # Sent in ConnectionRequest
    handshake: Literal["hello", "structured"] = "hello"  # "hello" = legacy plain-text greeting
    heartbeat_interval: float = 30.0  # Seconds between Ping frames while connected
    open_timeout: float = 15.0      # Seconds to open the WebSocket
    send_timeout: float = 10.0      # Seconds to write one frame
    close_timeout: float = 2.0      # Seconds to wait for the closing handshake


class LinkConfig(BaseSettings):
    """Root configuration for vibelink."""

    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)

    model_config = ConfigDict(env_prefix="VIBELINK_", env_nested_delimiter="__")
