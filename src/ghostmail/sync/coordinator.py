"""Single entry point that funnels sync triggers into coalesced passes."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from ..core.config import SyncSettings
from ..core.errors import CancelledError, GhostmailError, SyncError, is_transient
from ..core.models import SyncReport
from .engine import ReconciliationEngine

LOGGER = logging.getLogger(__name__)


class SyncCoordinator:
    """Run reconciliation passes for every trigger, one at a time.

    A trigger arriving while a pass is in flight is coalesced into it and
    gets a skipped report. Background triggers never raise; their last
    failure is kept on :attr:`last_error`.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        settings: SyncSettings,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._engine = engine
        self._settings = settings
        self._clock = clock
        self._pass_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._active_cancel: threading.Event | None = None
        self._last_started: float | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.last_error: Exception | None = None
        self.last_report: SyncReport | None = None

    @property
    def is_running(self) -> bool:
        return self._pass_lock.locked()

    def refresh_now(self) -> SyncReport:
        """Deduplicate then reconcile, raising failures to the caller."""
        return self._run_pass("manual", dedupe=True, raise_errors=True)

    def dedupe_now(self) -> int:
        """Remove duplicate local aliases once no pass is writing.

        Waits for a running pass instead of coalescing into it.
        """
        with self._pass_lock:
            removed = self._engine.dedupe_local()
        if removed:
            LOGGER.info("Removed %d duplicate aliases", removed)
        return removed

    def app_foregrounded(self) -> SyncReport:
        last = self._last_started
        if last is not None:
            elapsed = self._clock() - last
            if elapsed < self._settings.foreground_cooldown_seconds:
                LOGGER.debug("Foreground sync skipped; last pass %.1fs ago", elapsed)
                return SyncReport(skipped=True)
        return self._run_pass("foreground")

    def periodic_tick(self) -> SyncReport:
        return self._run_pass("periodic")

    def zones_changed(self) -> SyncReport:
        return self._run_pass("zones changed")

    def start(self) -> None:
        """Start the background timer calling :meth:`periodic_tick`."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_timer, name="ghostmail-sync-timer", daemon=True
        )
        self._thread.start()
        LOGGER.info(
            "Background sync every %.0fs", self._settings.periodic_interval_seconds
        )

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop the timer and cancel a pass that is still fetching."""
        self._stop_event.set()
        with self._state_lock:
            if self._active_cancel is not None:
                self._active_cancel.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def _run_timer(self) -> None:
        while not self._stop_event.wait(self._settings.periodic_interval_seconds):
            self.periodic_tick()

    def _run_pass(
        self, reason: str, *, dedupe: bool = False, raise_errors: bool = False
    ) -> SyncReport:
        if not self._pass_lock.acquire(blocking=False):
            LOGGER.debug("Sync (%s) coalesced into the running pass", reason)
            return SyncReport(skipped=True)
        cancel_event = threading.Event()
        with self._state_lock:
            self._active_cancel = cancel_event
        try:
            self._last_started = self._clock()
            LOGGER.debug("Sync pass started (%s)", reason)
            if dedupe:
                removed = self._engine.dedupe_local()
                if removed:
                    LOGGER.info("Removed %d duplicate aliases", removed)
            report = self._engine.reconcile(cancel_event)
            self.last_report = report
            self.last_error = None
            return report
        except CancelledError:
            LOGGER.info("Sync (%s) cancelled", reason)
            return SyncReport(skipped=True)
        except Exception as exc:  # pylint: disable=broad-except
            self.last_error = exc
            if raise_errors:
                raise
            LOGGER.log(
                logging.WARNING if _is_transient_failure(exc) else logging.ERROR,
                "Background sync (%s) failed: %s",
                reason,
                exc,
                exc_info=not isinstance(exc, GhostmailError),
            )
            failures = exc.failures if isinstance(exc, SyncError) else {}
            return SyncReport(failures=dict(failures))
        finally:
            with self._state_lock:
                self._active_cancel = None
            self._pass_lock.release()


def _is_transient_failure(exc: Exception) -> bool:
    if isinstance(exc, SyncError) and exc.failures:
        return all(is_transient(error) for error in exc.failures.values())
    return is_transient(exc)


__all__ = ["SyncCoordinator"]
