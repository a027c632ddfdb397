"""Zone registry and onboarding."""

from .registry import ZoneOnboarding, ZoneRegistry

__all__ = ["ZoneOnboarding", "ZoneRegistry"]
