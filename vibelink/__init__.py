"""vibelink: find a companion editor on the LAN and mirror its state."""

__version__ = "0.1.0"
