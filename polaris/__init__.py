"""DNS-over-HTTPS resolver service with recursive and forwarding modes and a domain filter."""

__version__ = "0.1.0"