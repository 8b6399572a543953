"""nat-socks — SOCKS5/HTTP proxy deployment orchestrator."""

__version__ = "0.1.0"
