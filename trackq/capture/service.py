"""
Capture Service - drives one tracked session through its capture ticks.

The OS capture itself is an injected collaborator (CaptureSource). At most one
tick is in flight at a time: a tick that starts while the previous one is
still categorizing is skipped rather than queued.

Key: CaptureService.start() -> tick()* -> stop()
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from trackq.classification.categorizer import (
    CategorizationOutcome,
    Categorizer,
    NoCategorizationAvailable,
)
from trackq.config import CAPTURE_INTERVAL_SECONDS
from trackq.observability.logging import get_logger
from trackq.observability.telemetry import counter, log_event
from trackq.storage.models import ActivitySession, utc_now
from trackq.storage.sessions import SessionRepository
from trackq.storage.taxonomy import TaxonomyStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class CapturedFrame:
    """One screenshot plus the focus context observed at capture time."""

    image: bytes
    app_name: str | None = None
    window_title: str | None = None
    bundle_identifier: str | None = None


class CaptureSource(Protocol):
    """Protocol for the OS capture collaborator."""

    def capture(self) -> CapturedFrame:
        """Grab the current screen and focused window.

        Side Effects:
            Reads the display and accessibility state
        """
        ...


class CaptureService:
    """Owns the active session and serializes capture ticks against it."""

    def __init__(
        self,
        categorizer: Categorizer,
        sessions: SessionRepository,
        taxonomy: TaxonomyStore,
        source: CaptureSource,
        interval: float = CAPTURE_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.categorizer = categorizer
        self.sessions = sessions
        self.taxonomy = taxonomy
        self.source = source
        self.interval = interval
        self.clock = clock
        self.current: ActivitySession | None = None
        self.last_outcome: CategorizationOutcome | None = None
        self._tick_lock = threading.Lock()
        self._state_lock = threading.Lock()

    @property
    def is_tracking(self) -> bool:
        return self.current is not None

    def start(
        self,
        app_name: str | None = None,
        window_title: str | None = None,
        bundle_identifier: str | None = None,
    ) -> ActivitySession:
        """
        Open a new active session, ending any session still being tracked.

        Side Effects:
            - Inserts a row into activity_sessions
        """
        if self.current is not None:
            self.stop()

        now = self.clock()
        session = ActivitySession(
            start_time=now,
            app_name=app_name,
            window_title=window_title,
            bundle_identifier=bundle_identifier,
            created_at=now,
        )
        self.sessions.save(session)
        with self._state_lock:
            self.current = session
        counter("capture.started")
        logger.info("Started tracking session %s", session.id)
        return session

    def tick(self) -> bool:
        """
        Capture one frame and categorize the active session.

        Returns:
            False when nothing was done (not tracking, or a tick is in flight)

        Raises:
            sqlite3.Error: Persistence failures propagate to the timer
        """
        if not self._tick_lock.acquire(blocking=False):
            counter("capture.tick_skipped")
            logger.debug("Previous capture tick still running; skipping")
            return False

        try:
            session = self.current
            if session is None:
                return False

            frame = self.source.capture()
            session.app_name = frame.app_name or session.app_name
            session.window_title = frame.window_title or session.window_title
            session.bundle_identifier = frame.bundle_identifier or session.bundle_identifier
            session.increment_screenshot_count()
            session.update_duration(self.clock())
            self.sessions.save(session)

            try:
                outcome = self.categorizer.categorize(frame.image, session)
            except NoCategorizationAvailable as e:
                counter("capture.uncategorized")
                logger.warning("Capture tick left session %s uncategorized: %s", session.id, e)
                return True

            if outcome is None or self.current is not session:
                # Stopped (or restarted) while the classifier call was running
                counter("capture.result_discarded")
                logger.info("Session %s closed during categorization; result discarded", session.id)
                return True

            self.last_outcome = outcome
            counter("capture.tick")
            return True
        finally:
            self._tick_lock.release()

    def stop(self) -> ActivitySession | None:
        """
        End the active session and credit its duration to its project.

        Side Effects:
            - Updates the session row (end time, inactive, final duration)
            - Adds the duration to the session's project total
        """
        with self._state_lock:
            session, self.current = self.current, None
        if session is None:
            return None

        now = self.clock()
        with self.sessions.db.transaction():
            # Pick up categorization written by a tick that finished concurrently
            stored = self.sessions.get(session.id) if session.id is not None else None
            if stored is None:
                logger.info("Session %s was deleted before stop", session.id)
                return None
            stored.end(now)
            self.sessions.save(stored)
            if stored.project_id is not None:
                self.taxonomy.projects.record_activity(stored.project_id, stored.duration, now)

        log_event(
            "capture.stopped",
            session_id=stored.id,
            duration=round(stored.duration, 1),
            screenshots=stored.screenshot_count,
        )
        return stored

    def run_forever(self, stop_event: threading.Event) -> None:
        """Tick every ``interval`` seconds until ``stop_event`` is set, then stop."""
        logger.info("Capture loop running every %ss", self.interval)
        while not stop_event.is_set():
            self.tick()
            stop_event.wait(self.interval)
        self.stop()
