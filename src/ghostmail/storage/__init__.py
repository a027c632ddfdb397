"""Persistence layer."""

from .secrets import FernetSecretStore
from .sqlite import SqliteAliasRepository

__all__ = ["FernetSecretStore", "SqliteAliasRepository"]
