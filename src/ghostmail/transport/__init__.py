"""Transport adapters for the email routing provider."""

from .cloudflare import CloudflareClient

__all__ = ["CloudflareClient"]
