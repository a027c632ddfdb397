"""Encrypted on-disk secret store for zone API tokens."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

from ..core.config import SecretsSettings
from ..core.interfaces import SecretStore
from ..core.logging import mask_id

LOGGER = logging.getLogger(__name__)


class FernetSecretStore(SecretStore):
    """Keep secrets in a Fernet-encrypted JSON vault.

    The key lives in its own file, created on first use with ``0600``
    permissions. Every write replaces the vault atomically.
    """

    def __init__(self, vault_path: Path | str, key_path: Path | str) -> None:
        self._vault_path = Path(vault_path)
        self._key_path = Path(key_path)
        self._lock = threading.Lock()
        self._cipher: Fernet | None = None

    @classmethod
    def from_settings(cls, settings: SecretsSettings) -> FernetSecretStore:
        return cls(settings.vault_path, settings.key_path)

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._read_vault().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            vault = self._read_vault()
            vault[key] = value
            self._write_vault(vault)
        LOGGER.debug("Stored secret for %s", mask_id(key))

    def delete(self, key: str) -> None:
        with self._lock:
            vault = self._read_vault()
            if vault.pop(key, None) is None:
                return
            self._write_vault(vault)
        LOGGER.debug("Deleted secret for %s", mask_id(key))

    def _get_cipher(self) -> Fernet:
        if self._cipher is None:
            self._cipher = Fernet(self._get_or_create_key())
        return self._cipher

    def _get_or_create_key(self) -> bytes:
        self._key_path.parent.mkdir(parents=True, exist_ok=True)
        if self._key_path.exists():
            key = self._key_path.read_bytes().strip()
            try:
                Fernet(key)
                return key
            except (ValueError, TypeError):
                LOGGER.warning(
                    "Secret key at %s is invalid; generating a new one",
                    self._key_path,
                )

        key = Fernet.generate_key()
        fd = os.open(self._key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as handle:
            handle.write(key)
        try:
            os.chmod(self._key_path, 0o600)
        except OSError:
            LOGGER.debug("Could not restrict permissions on %s", self._key_path)
        return key

    def _read_vault(self) -> dict[str, str]:
        if not self._vault_path.exists():
            return {}
        try:
            payload = self._get_cipher().decrypt(self._vault_path.read_bytes())
            data = json.loads(payload.decode("utf-8"))
        except (InvalidToken, ValueError) as exc:
            # Unreadable tokens surface as zones needing re-authentication.
            LOGGER.error("Secret vault %s is unreadable: %s", self._vault_path, exc)
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(key): str(value) for key, value in data.items()}

    def _write_vault(self, vault: dict[str, str]) -> None:
        token = self._get_cipher().encrypt(json.dumps(vault).encode("utf-8"))
        self._vault_path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(
            dir=self._vault_path.parent, prefix=f".{self._vault_path.name}."
        )
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(token)
            os.chmod(temp_name, 0o600)
            os.replace(temp_name, self._vault_path)
        except OSError:
            Path(temp_name).unlink(missing_ok=True)
            raise


__all__ = ["FernetSecretStore"]
