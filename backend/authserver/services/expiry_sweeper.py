"""Background sweeper deleting expired codes, pending requests and refresh tokens."""

from __future__ import annotations

import logging
import threading
import time
from typing import Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from authserver.config import settings
from authserver.core.database import SessionLocal
from authserver.services.authorization_code_service import authorization_code_service
from authserver.services.consent_service import consent_service
from authserver.services.token_service import token_service

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Periodic garbage collection of expired authorization-flow records."""

    def __init__(self) -> None:
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._heartbeat: float = 0.0
        self._swept_count: int = 0
        self._lock = threading.Lock()

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="expiry-sweeper", daemon=True)
        self._thread.start()
        logger.info("Expiry sweeper started")

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        logger.info("Expiry sweeper stopped")

    def status(self) -> dict:
        return {
            "running": self.is_running(),
            "last_heartbeat": self._heartbeat,
            "swept_count": self._swept_count,
        }

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.sweep_once()
            except SQLAlchemyError as exc:
                logger.exception("Expiry sweep failed: %s", exc)
            self._heartbeat = time.time()
            self._stop_event.wait(max(1.0, settings.SWEEPER_INTERVAL_SECONDS))

    def sweep_once(self) -> Dict[str, int]:
        """Run one purge pass; returns the number of deleted rows per record type."""
        db = SessionLocal()
        try:
            counts = {
                "authorization_codes": authorization_code_service.purge_expired(db),
                "pending_authorizations": consent_service.purge_expired(db),
                "refresh_tokens": token_service.purge_expired(db),
            }
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

        total = sum(counts.values())
        with self._lock:
            self._swept_count += total
        if total:
            logger.info("Expiry sweep removed %s", counts)
        return counts


expiry_sweeper = ExpirySweeper()
