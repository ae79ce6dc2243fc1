"""Configuration module for vibelink."""

from vibelink.config.schema import ConnectionConfig, DiscoveryConfig, LinkConfig

__all__ = ["ConnectionConfig", "DiscoveryConfig", "LinkConfig"]
