"""
Offline categorization cache backed by the cached_categorizations table.

Every successful online categorization is appended here; when the remote
classifier is unreachable the categorizer asks this cache instead. Entries
expire after the retention window and the table is capped, evicting the
least-used, oldest rows first.

Key: OfflineCache.record / lookup / touch / prune with three-tier lookup
(exact app+title, stored pattern in title, app only).
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta

from trackq.config import CACHE_MAX_ENTRIES, CACHE_PRUNE_RATIO, CACHE_RETENTION_DAYS
from trackq.infrastructure.database import Database, retry_on_db_lock
from trackq.observability.logging import get_logger
from trackq.observability.telemetry import counter, log_event
from trackq.storage import BaseRepository
from trackq.storage.models import CachedCategorization, parse_dt, to_iso, utc_now

logger = get_logger(__name__)

# Newest entries win ties at equal use count
_RANKING = "ORDER BY use_count DESC, timestamp DESC, id DESC"


@dataclass(frozen=True)
class CacheStats:
    total_entries: int
    unique_apps: int
    avg_confidence: float
    oldest_entry: datetime | None
    newest_entry: datetime | None


class OfflineCache(BaseRepository):
    """Append-only cache of categorizations keyed by app name and window title."""

    table_name = "cached_categorizations"

    def __init__(
        self,
        db: Database,
        retention_days: int = CACHE_RETENTION_DAYS,
        max_entries: int = CACHE_MAX_ENTRIES,
        prune_ratio: float = CACHE_PRUNE_RATIO,
    ):
        super().__init__(db)
        self.retention_days = retention_days
        self.max_entries = max_entries
        self.keep_entries = int(max_entries * prune_ratio)

    @retry_on_db_lock()
    def record(
        self,
        app_name: str,
        window_title: str | None,
        project_name: str,
        project_role: str,
        work_category: str,
        patterns: list[str],
        confidence: float,
        now: datetime | None = None,
    ) -> CachedCategorization:
        """
        Append a categorization, pruning in the same transaction once over capacity.

        Side Effects:
            - Inserts a row into cached_categorizations
            - May delete expired / excess rows (same transaction)
        """
        entry = CachedCategorization(
            app_name=app_name,
            window_title=window_title,
            project_name=project_name,
            project_role=project_role,
            work_category=work_category,
            patterns=list(patterns),
            confidence=confidence,
            timestamp=now or utc_now(),
        )
        row = entry.to_db_dict()
        row.pop("id")

        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO cached_categorizations (
                    app_name, window_title, project_name, project_role,
                    work_category, patterns, confidence, timestamp, use_count
                ) VALUES (
                    :app_name, :window_title, :project_name, :project_role,
                    :work_category, :patterns, :confidence, :timestamp, :use_count
                )
                """,
                row,
            )
            entry.id = cursor.lastrowid
            total = conn.execute("SELECT COUNT(*) FROM cached_categorizations").fetchone()[0]
            if total > self.max_entries:
                self._prune(conn, now or utc_now())

        counter("cache.offline.write")
        return entry

    def lookup(self, app_name: str | None, window_title: str | None = None) -> CachedCategorization | None:
        """
        Find the best cached categorization for an app/window.

        1. exact app + window title, most used then most recent
        2. first candidate for the app whose stored pattern occurs in the title
        3. most used / most recent entry for the app
        """
        if not app_name:
            return None

        if window_title:
            row = self.query_one(
                f"""
                SELECT * FROM cached_categorizations
                WHERE app_name = ? AND window_title = ?
                {_RANKING} LIMIT 1
                """,
                (app_name, window_title),
            )
            if row:
                counter("cache.offline.hit.exact")
                return CachedCategorization.from_db_row(dict(row))

        rows = self.query_all(
            f"SELECT * FROM cached_categorizations WHERE app_name = ? {_RANKING}",
            (app_name,),
        )
        if not rows:
            counter("cache.offline.miss")
            return None

        candidates = [CachedCategorization.from_db_row(dict(row)) for row in rows]
        if window_title:
            title = window_title.lower()
            for candidate in candidates:
                if any(p and p.lower() in title for p in candidate.patterns):
                    counter("cache.offline.hit.pattern")
                    return candidate

        counter("cache.offline.hit.app")
        return candidates[0]

    def touch(self, entry_id: int) -> None:
        """Increment use count for a reused entry."""
        self.execute(
            "UPDATE cached_categorizations SET use_count = use_count + 1 WHERE id = ?",
            (entry_id,),
        )

    def get(self, entry_id: int) -> CachedCategorization | None:
        row = self.query_one("SELECT * FROM cached_categorizations WHERE id = ?", (entry_id,))
        return CachedCategorization.from_db_row(dict(row)) if row else None

    @retry_on_db_lock()
    def prune(self, now: datetime | None = None) -> int:
        """
        Delete expired entries, then trim to the keep size if still over capacity.

        Returns:
            Number of rows deleted

        Side Effects:
            - Deletes rows from cached_categorizations
        """
        with self.db.transaction() as conn:
            return self._prune(conn, now or utc_now())

    def _prune(self, conn: sqlite3.Connection, now: datetime) -> int:
        cutoff = now - timedelta(days=self.retention_days)
        expired = conn.execute(
            "DELETE FROM cached_categorizations WHERE timestamp < ?", (to_iso(cutoff),)
        ).rowcount

        evicted = 0
        remaining = conn.execute("SELECT COUNT(*) FROM cached_categorizations").fetchone()[0]
        if remaining > self.max_entries:
            evicted = conn.execute(
                f"""
                DELETE FROM cached_categorizations WHERE id NOT IN (
                    SELECT id FROM cached_categorizations {_RANKING} LIMIT ?
                )
                """,
                (self.keep_entries,),
            ).rowcount

        if expired or evicted:
            counter("cache.offline.pruned", expired + evicted)
            log_event("cache.offline.pruned", expired=expired, evicted=evicted)
            logger.info("Pruned offline cache: %d expired, %d evicted", expired, evicted)
        return expired + evicted

    def clear(self) -> int:
        with self.db.transaction() as conn:
            deleted = conn.execute("DELETE FROM cached_categorizations").rowcount
        logger.info("Cleared offline cache (%d entries)", deleted)
        return deleted

    def stats(self) -> CacheStats:
        row = self.query_one(
            """
            SELECT COUNT(*) AS total,
                   COUNT(DISTINCT app_name) AS apps,
                   COALESCE(AVG(confidence), 0) AS avg_conf,
                   MIN(timestamp) AS oldest,
                   MAX(timestamp) AS newest
            FROM cached_categorizations
            """
        )
        return CacheStats(
            total_entries=row["total"],
            unique_apps=row["apps"],
            avg_confidence=float(row["avg_conf"]),
            oldest_entry=parse_dt(row["oldest"]),
            newest_entry=parse_dt(row["newest"]),
        )
