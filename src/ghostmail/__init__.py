"""Multi-zone Cloudflare Email Routing alias sync."""

__version__ = "0.1.0"
