"""SQLite-backed alias replica and zone record store."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Callable
from pathlib import Path
from types import TracebackType

from ..core.config import StorageSettings
from ..core.datetime_utils import parse_datetime, serialize_datetime, utcnow
from ..core.events import ChangeNotifier
from ..core.interfaces import AliasChangeSet, AliasRepository, ZoneRecordStore
from ..core.models import ActionType, EmailAlias, Zone

LOGGER = logging.getLogger(__name__)

_ALIAS_COLUMNS = (
    "id",
    "email_address",
    "website",
    "notes",
    "created",
    "cloudflare_tag",
    "is_enabled",
    "sort_index",
    "forward_to",
    "zone_id",
    "action_type",
    "is_logged_out",
    "is_manually_created",
    "icloud_sync_disabled",
    "user_identifier",
)


class SqliteAliasRepository(AliasRepository, ZoneRecordStore):
    """Persist aliases and zone metadata using SQLite."""

    def __init__(self, settings: StorageSettings) -> None:
        """Initialise the repository and apply migrations."""
        self._settings = settings
        db_path = Path(settings.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = sqlite3.connect(
            db_path,
            detect_types=sqlite3.PARSE_DECLTYPES,
            check_same_thread=False,
        )
        self._connection.row_factory = sqlite3.Row
        # One connection is shared by the API thread and the sync timer.
        self._lock = threading.RLock()
        self._changes: ChangeNotifier[AliasChangeSet] = ChangeNotifier("aliases")
        self._apply_migrations()
        self._ensure_indexes()

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> SqliteAliasRepository:
        """Enter context manager scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure the connection is closed when exiting context manager."""
        self.close()

    # AliasRepository API -----------------------------------------------------
    def list_aliases(
        self, *, include_logged_out: bool = False, insertion_order: bool = False
    ) -> list[EmailAlias]:
        """Return aliases ordered by ``sort_index``, or by insertion when asked."""
        query = "SELECT * FROM aliases"
        if not include_logged_out:
            query += " WHERE is_logged_out = 0"
        if insertion_order:
            query += " ORDER BY rowid ASC"
        else:
            query += " ORDER BY sort_index ASC, rowid ASC"
        with self._lock:
            rows = self._connection.execute(query).fetchall()
        return [_row_to_alias(row) for row in rows]

    def get_alias(self, alias_id: str) -> EmailAlias | None:
        with self._lock:
            row = self._connection.execute(
                "SELECT * FROM aliases WHERE id = ?", (alias_id,)
            ).fetchone()
        return _row_to_alias(row) if row else None

    def apply_changes(self, changes: AliasChangeSet) -> None:
        """Commit ``changes`` in one transaction, then notify subscribers."""
        if not changes:
            return
        placeholders = ", ".join("?" for _ in _ALIAS_COLUMNS)
        assignments = ", ".join(
            f"{column} = ?" for column in _ALIAS_COLUMNS if column != "id"
        )
        with self._lock:
            try:
                with self._connection:
                    for alias in changes.inserts:
                        self._connection.execute(
                            f"INSERT INTO aliases ({', '.join(_ALIAS_COLUMNS)}) "
                            f"VALUES ({placeholders})",
                            _alias_to_row(alias),
                        )
                    for alias in changes.updates:
                        values = _alias_to_row(alias)
                        self._connection.execute(
                            f"UPDATE aliases SET {assignments} WHERE id = ?",
                            (*values[1:], values[0]),
                        )
                    for alias_id in changes.deletes:
                        self._connection.execute(
                            "DELETE FROM aliases WHERE id = ?", (alias_id,)
                        )
            except sqlite3.Error as exc:
                LOGGER.error(
                    "Failed to commit alias changes (%d inserts, %d updates, "
                    "%d deletes): %s",
                    len(changes.inserts),
                    len(changes.updates),
                    len(changes.deletes),
                    exc,
                    exc_info=True,
                )
                raise
        LOGGER.debug(
            "Committed alias changes: +%d ~%d -%d",
            len(changes.inserts),
            len(changes.updates),
            len(changes.deletes),
        )
        self._changes.publish(changes)

    def set_logged_out(self, *, zone_id: str | None, logged_out: bool) -> int:
        """Flag aliases of ``zone_id`` (all aliases when ``None``)."""
        with self._lock:
            with self._connection:
                if zone_id is None:
                    cursor = self._connection.execute(
                        "UPDATE aliases SET is_logged_out = ? WHERE is_logged_out != ?",
                        (int(logged_out), int(logged_out)),
                    )
                else:
                    cursor = self._connection.execute(
                        "UPDATE aliases SET is_logged_out = ? "
                        "WHERE zone_id = ? AND is_logged_out != ?",
                        (int(logged_out), zone_id, int(logged_out)),
                    )
        count = cursor.rowcount
        if count:
            LOGGER.info(
                "Marked %d aliases as %s",
                count,
                "logged out" if logged_out else "logged in",
            )
            self._changes.publish(AliasChangeSet())
        return count

    def subscribe(
        self, callback: Callable[[AliasChangeSet], None]
    ) -> Callable[[], None]:
        return self._changes.subscribe(callback)

    # ZoneRecordStore API -----------------------------------------------------
    def list_zone_records(self) -> list[Zone]:
        """Return stored zones in the order they were added."""
        with self._lock:
            rows = self._connection.execute(
                "SELECT * FROM zones ORDER BY added_at ASC, rowid ASC"
            ).fetchall()
        return [_row_to_zone(row) for row in rows]

    def upsert_zone_record(self, zone: Zone) -> None:
        """Insert or update zone metadata; the token is never written here."""
        with self._lock:
            with self._connection:
                self._connection.execute(
                    """
                    INSERT INTO zones (
                        zone_id,
                        account_id,
                        account_name,
                        domain_name,
                        subdomains_enabled,
                        subdomains,
                        added_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(zone_id) DO UPDATE SET
                        account_id=excluded.account_id,
                        account_name=excluded.account_name,
                        domain_name=excluded.domain_name,
                        subdomains_enabled=excluded.subdomains_enabled,
                        subdomains=excluded.subdomains
                    """,
                    (
                        zone.zone_id,
                        zone.account_id,
                        zone.account_name,
                        zone.domain_name,
                        int(zone.subdomains_enabled),
                        json.dumps(list(zone.subdomains)),
                        serialize_datetime(utcnow()),
                    ),
                )

    def delete_zone_record(self, zone_id: str) -> bool:
        with self._lock:
            with self._connection:
                cursor = self._connection.execute(
                    "DELETE FROM zones WHERE zone_id = ?", (zone_id,)
                )
        return cursor.rowcount > 0

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        self._connection.close()

    # Internal helpers --------------------------------------------------------
    def _apply_migrations(self) -> None:
        schema_dir = Path(__file__).resolve().parent / "schema"
        migrations = sorted(schema_dir.glob("*.sql"))
        for migration in migrations:
            LOGGER.debug("Applying migration %s", migration.name)
            script = migration.read_text(encoding="utf-8")
            try:
                self._apply_default_migration(script)
            except sqlite3.Error as exc:  # pragma: no cover - logged for visibility
                LOGGER.warning(
                    "Migration %s failed (possibly already applied): %s",
                    migration.name,
                    exc,
                )

    def _apply_default_migration(self, script: str) -> None:
        """Execute the supplied migration script inside a transaction."""
        with self._connection:
            self._connection.executescript(script)

    def _ensure_indexes(self) -> None:
        """Create supporting indexes that may be missing from older schemas."""
        with self._connection:
            self._connection.execute(
                "CREATE INDEX IF NOT EXISTS idx_aliases_sort_index "
                "ON aliases(sort_index)"
            )
            self._connection.execute(
                "CREATE INDEX IF NOT EXISTS idx_aliases_email "
                "ON aliases(email_address COLLATE NOCASE)"
            )
            self._connection.execute(
                "CREATE INDEX IF NOT EXISTS idx_aliases_zone ON aliases(zone_id)"
            )


def _alias_to_row(alias: EmailAlias) -> tuple[object, ...]:
    return (
        alias.id,
        alias.email_address,
        alias.website,
        alias.notes,
        serialize_datetime(alias.created),
        alias.cloudflare_tag,
        int(alias.is_enabled),
        alias.sort_index,
        alias.forward_to,
        alias.zone_id,
        alias.action_type.value,
        int(alias.is_logged_out),
        int(alias.is_manually_created),
        int(alias.icloud_sync_disabled),
        alias.user_identifier,
    )


def _row_to_alias(row: sqlite3.Row) -> EmailAlias:
    return EmailAlias(
        id=row["id"],
        email_address=row["email_address"],
        website=row["website"] or "",
        notes=row["notes"] or "",
        created=parse_datetime(row["created"]),
        cloudflare_tag=row["cloudflare_tag"],
        is_enabled=bool(row["is_enabled"]),
        sort_index=int(row["sort_index"]),
        forward_to=row["forward_to"] or "",
        zone_id=row["zone_id"] or "",
        action_type=ActionType.parse(row["action_type"]),
        is_logged_out=bool(row["is_logged_out"]),
        is_manually_created=bool(row["is_manually_created"]),
        icloud_sync_disabled=bool(row["icloud_sync_disabled"]),
        user_identifier=row["user_identifier"] or "",
    )


def _row_to_zone(row: sqlite3.Row) -> Zone:
    try:
        subdomains = tuple(sorted(json.loads(row["subdomains"] or "[]")))
    except json.JSONDecodeError:
        LOGGER.warning("Discarding unreadable subdomains for zone %s", row["zone_id"])
        subdomains = ()
    return Zone(
        account_id=row["account_id"],
        zone_id=row["zone_id"],
        account_name=row["account_name"] or "",
        domain_name=row["domain_name"] or "",
        subdomains_enabled=bool(row["subdomains_enabled"]),
        subdomains=subdomains,
    )


__all__ = ["SqliteAliasRepository"]
