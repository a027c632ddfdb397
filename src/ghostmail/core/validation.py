"""Input validation shared by alias and zone flows."""

from __future__ import annotations

import re

from .errors import ValidationError

_EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
_DANGEROUS_SCHEMES = ("javascript:", "data:", "file:")
_DANGEROUS_CHARS = re.compile(r"[\n\r\t<>\"'\\]")


def is_valid_email_address(address: str) -> bool:
    return bool(_EMAIL_PATTERN.match(address))


def require_email_address(address: str) -> str:
    """Return the trimmed address or raise :class:`ValidationError`."""
    trimmed = address.strip()
    if not is_valid_email_address(trimmed):
        raise ValidationError(f"Invalid email address: {trimmed!r}")
    return trimmed


def is_safe_url_scheme(url: str) -> bool:
    lowered = url.strip().lower()
    return not lowered.startswith(_DANGEROUS_SCHEMES)


def sanitize_input(value: str) -> str:
    """Remove characters usable for markup or header injection."""
    return _DANGEROUS_CHARS.sub("", value)


def base_address(address: str) -> str:
    """Strip a ``+tag`` suffix from the local part (read-side grouping only)."""
    local, sep, domain = address.strip().lower().partition("@")
    if not sep:
        return local
    return f"{local.split('+', 1)[0]}@{domain}"


__all__ = [
    "base_address",
    "is_safe_url_scheme",
    "is_valid_email_address",
    "require_email_address",
    "sanitize_input",
]
