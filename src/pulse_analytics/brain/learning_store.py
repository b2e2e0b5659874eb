"""
Scope & Learning Store

SQLite persistence for correlations across the three scopes, plus the
operations that move knowledge between them:

    upsert_entity_correlation - discovery writes (create / update / fork)
    record_validation         - validator trial outcome + decay
    contribute_upward         - entity -> regional / global roll-up
    resolve                   - most-specific-first pattern lookup
    record_application        - prediction usage counter

Concurrency:
    Every record carries a ``row_version``. Writers read, compute, then
    ``UPDATE ... WHERE row_version = ?`` and retry with a fresh read when the
    row moved underneath them. Entity-scoped upserts are additionally
    serialized per (entity, type, factor shape) with in-process locks, and
    roll-up merges run inside ``BEGIN IMMEDIATE`` so two entities rolling up
    into the same regional record never lose a contribution.

History:
    Records are never deleted. Each create / update / validation /
    deactivation / roll-up appends a JSON snapshot to ``correlation_events``.
    Re-accepting a deactivated pattern forks a new version that points back
    at its predecessor.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ..core import stats
from ..core.config import PulseConfig
from ..core.db_adapter import get_connection, immediate_transaction, query_deadline
from ..core.exceptions import PulseError, ResolutionExhausted, StaleVersionConflict, UpstreamUnavailable
from ..core.locations import Location
from .correlation import (
    Correlation,
    Outcome,
    PatternFactor,
    PatternText,
    Scope,
    Statistics,
)

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"


class CorrelationStore:
    """Persistent, versioned store of correlations at entity/regional/global scope."""

    def __init__(self, db_path: str, config: Optional[PulseConfig] = None):
        self.db_path = db_path
        self.config = config or PulseConfig(db_path=db_path)
        self._locks: Dict[Tuple[str, ...], threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._init_schema()

    def _init_schema(self):
        conn = get_connection(self.db_path)
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS correlations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    scope TEXT NOT NULL,
                    entity_id TEXT NOT NULL DEFAULT '',
                    region TEXT NOT NULL DEFAULT '',
                    category TEXT NOT NULL DEFAULT '',
                    type TEXT NOT NULL,
                    factor_key TEXT NOT NULL,
                    factor_json TEXT NOT NULL,
                    outcome_json TEXT NOT NULL,
                    statistics_json TEXT NOT NULL,
                    pattern_json TEXT NOT NULL,
                    first_discovered TEXT,
                    last_updated TEXT,
                    data_points INTEGER DEFAULT 0,
                    coverage_start TEXT,
                    coverage_end TEXT,
                    holdout_from TEXT,
                    entities_contributing INTEGER DEFAULT 1,
                    times_validated INTEGER DEFAULT 0,
                    times_invalidated INTEGER DEFAULT 0,
                    accuracy REAL DEFAULT 0,
                    is_active INTEGER DEFAULT 1,
                    confidence REAL DEFAULT 0,
                    times_applied INTEGER DEFAULT 0,
                    last_applied TEXT,
                    version INTEGER DEFAULT 1,
                    previous_version_id INTEGER,
                    is_head INTEGER DEFAULT 1,
                    row_version INTEGER DEFAULT 0
                );

                -- At most one head per (scope key, type, factor shape)
                CREATE UNIQUE INDEX IF NOT EXISTS idx_correlations_head
                ON correlations(scope, entity_id, region, category, type, factor_key)
                WHERE is_head = 1;

                CREATE INDEX IF NOT EXISTS idx_correlations_resolve
                ON correlations(scope, is_active, is_head, confidence);

                -- Append-only audit trail
                CREATE TABLE IF NOT EXISTS correlation_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    correlation_id INTEGER NOT NULL,
                    event TEXT NOT NULL,
                    at TEXT NOT NULL,
                    snapshot TEXT NOT NULL  -- JSON
                );

                CREATE INDEX IF NOT EXISTS idx_events_correlation
                ON correlation_events(correlation_id);

                -- One row per (shared record, contributing entity)
                CREATE TABLE IF NOT EXISTS contributions (
                    shared_id INTEGER NOT NULL,
                    entity_id TEXT NOT NULL,
                    source_id INTEGER NOT NULL,
                    r REAL NOT NULL,
                    change REAL NOT NULL,
                    value REAL NOT NULL,
                    baseline REAL NOT NULL,
                    sample_size INTEGER NOT NULL,
                    data_points INTEGER NOT NULL,
                    times_validated INTEGER NOT NULL,
                    times_invalidated INTEGER NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (shared_id, entity_id)
                );

                -- Held-out window bookkeeping for the validator
                CREATE TABLE IF NOT EXISTS validation_log (
                    correlation_id INTEGER NOT NULL,
                    entity_id TEXT NOT NULL,
                    validated_through TEXT NOT NULL,
                    PRIMARY KEY (correlation_id, entity_id)
                );
            """)
            conn.commit()
        finally:
            conn.close()

    # =========================================================================
    # Serialization
    # =========================================================================

    @staticmethod
    def _row_to_correlation(row: sqlite3.Row) -> Correlation:
        return Correlation(
            id=row["id"],
            scope=row["scope"],
            entity_id=row["entity_id"] or None,
            region=row["region"] or None,
            category=row["category"] or None,
            type=row["type"],
            factor=PatternFactor.from_dict(json.loads(row["factor_json"])),
            outcome=Outcome(**json.loads(row["outcome_json"])),
            statistics=Statistics(**json.loads(row["statistics_json"])),
            pattern=PatternText(**json.loads(row["pattern_json"])),
            first_discovered=row["first_discovered"],
            last_updated=row["last_updated"],
            data_points=row["data_points"],
            coverage_start=row["coverage_start"],
            coverage_end=row["coverage_end"],
            holdout_from=row["holdout_from"],
            entities_contributing=row["entities_contributing"],
            times_validated=row["times_validated"],
            times_invalidated=row["times_invalidated"],
            accuracy=row["accuracy"],
            is_active=bool(row["is_active"]),
            confidence=row["confidence"],
            times_applied=row["times_applied"],
            last_applied=row["last_applied"],
            version=row["version"],
            previous_version_id=row["previous_version_id"],
            is_head=bool(row["is_head"]),
            row_version=row["row_version"],
        )

    @staticmethod
    def _scope_key(c: Correlation) -> Tuple[str, str, str, str]:
        return (c.scope, c.entity_id or "", c.region or "", c.category or "")

    def _insert(self, conn: sqlite3.Connection, c: Correlation) -> int:
        scope, entity_id, region, category = self._scope_key(c)
        cursor = conn.execute("""
            INSERT INTO correlations (
                scope, entity_id, region, category, type, factor_key, factor_json,
                outcome_json, statistics_json, pattern_json,
                first_discovered, last_updated, data_points, coverage_start, coverage_end, holdout_from,
                entities_contributing, times_validated, times_invalidated, accuracy,
                is_active, confidence, times_applied, last_applied,
                version, previous_version_id, is_head, row_version
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
        """, (
            scope, entity_id, region, category, c.type, c.factor_key, json.dumps(c.factor.to_dict()),
            json.dumps(c.to_dict()["outcome"]), json.dumps(c.to_dict()["statistics"]),
            json.dumps(c.to_dict()["pattern"]),
            c.first_discovered, c.last_updated, c.data_points, c.coverage_start, c.coverage_end, c.holdout_from,
            c.entities_contributing, c.times_validated, c.times_invalidated, c.accuracy,
            1 if c.is_active else 0, c.confidence, c.times_applied, c.last_applied,
            c.version, c.previous_version_id, 1 if c.is_head else 0,
        ))
        c.id = cursor.lastrowid
        c.row_version = 0
        return c.id

    def _update(self, conn: sqlite3.Connection, c: Correlation, expected_row_version: int) -> bool:
        """
        Compare-and-swap write of every learned field.

        ``times_applied`` / ``last_applied`` are owned by ``record_application``
        and never written here.
        """
        data = c.to_dict()
        cursor = conn.execute("""
            UPDATE correlations SET
                factor_json = ?, outcome_json = ?, statistics_json = ?, pattern_json = ?,
                last_updated = ?, data_points = ?, coverage_start = ?, coverage_end = ?,
                entities_contributing = ?, times_validated = ?, times_invalidated = ?,
                accuracy = ?, is_active = ?, confidence = ?, is_head = ?,
                row_version = row_version + 1
            WHERE id = ? AND row_version = ?
        """, (
            json.dumps(data["factor"]), json.dumps(data["outcome"]),
            json.dumps(data["statistics"]), json.dumps(data["pattern"]),
            c.last_updated, c.data_points, c.coverage_start, c.coverage_end,
            c.entities_contributing, c.times_validated, c.times_invalidated,
            c.accuracy, 1 if c.is_active else 0, c.confidence, 1 if c.is_head else 0,
            c.id, expected_row_version,
        ))
        if cursor.rowcount == 1:
            c.row_version = expected_row_version + 1
            return True
        return False

    def _log_event(self, conn: sqlite3.Connection, c: Correlation, event: str) -> None:
        conn.execute(
            "INSERT INTO correlation_events (correlation_id, event, at, snapshot) VALUES (?, ?, ?, ?)",
            (c.id, event, datetime.now().isoformat(), json.dumps(c.to_dict(), default=str)),
        )

    def _fetch_head(self, conn: sqlite3.Connection, scope_key: Tuple[str, str, str, str],
                    correlation_type: str, factor_key: str) -> Optional[Correlation]:
        row = conn.execute("""
            SELECT * FROM correlations
            WHERE scope = ? AND entity_id = ? AND region = ? AND category = ?
              AND type = ? AND factor_key = ? AND is_head = 1
        """, scope_key + (correlation_type, factor_key)).fetchone()
        return self._row_to_correlation(row) if row else None

    def _lock_for(self, key: Tuple[str, ...]) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _refresh(self, c: Correlation) -> None:
        c.refresh_confidence(self.config.trial_saturation, self.config.sample_saturation)

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, correlation_id: int) -> Optional[Correlation]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT * FROM correlations WHERE id = ?", (correlation_id,)).fetchone()
        finally:
            conn.close()
        return self._row_to_correlation(row) if row else None

    def list_correlations(
        self,
        scope: Optional[str] = None,
        entity_id: Optional[str] = None,
        region: Optional[str] = None,
        active_only: bool = False,
        heads_only: bool = True,
    ) -> List[Correlation]:
        clauses = []
        params: List[Any] = []
        if scope:
            clauses.append("scope = ?")
            params.append(scope)
        if entity_id:
            clauses.append("entity_id = ?")
            params.append(entity_id)
        if region:
            clauses.append("region = ?")
            params.append(region)
        if active_only:
            clauses.append("is_active = 1")
        if heads_only:
            clauses.append("is_head = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                f"SELECT * FROM correlations {where} ORDER BY confidence DESC, id",
                tuple(params),
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_correlation(r) for r in rows]

    def history(self, correlation_id: int) -> List[Dict[str, Any]]:
        """Event log for the whole version chain ending at ``correlation_id``."""
        conn = get_connection(self.db_path)
        try:
            chain = []
            current: Optional[int] = correlation_id
            while current is not None:
                chain.append(current)
                row = conn.execute(
                    "SELECT previous_version_id FROM correlations WHERE id = ?", (current,)
                ).fetchone()
                current = row["previous_version_id"] if row else None

            placeholders = ",".join("?" for _ in chain)
            rows = conn.execute(
                f"SELECT correlation_id, event, at, snapshot FROM correlation_events "
                f"WHERE correlation_id IN ({placeholders}) ORDER BY id",
                tuple(chain),
            ).fetchall()
        finally:
            conn.close()
        return [
            {
                "correlation_id": r["correlation_id"],
                "event": r["event"],
                "at": r["at"],
                "snapshot": json.loads(r["snapshot"]),
            }
            for r in rows
        ]

    def most_reliable(self, limit: int = 20, min_data_points: int = 30) -> List[Correlation]:
        """
        Active patterns ranked by reliability:
        0.4*accuracy + 30*min(data_points/1000, 1) + 30*|r|.
        """
        candidates = [
            c for c in self.list_correlations(active_only=True)
            if c.data_points >= min_data_points
        ]

        def score(c: Correlation) -> float:
            return (
                0.4 * c.accuracy
                + 30.0 * min(c.data_points / 1000.0, 1.0)
                + 30.0 * abs(c.statistics.r)
            )

        return sorted(candidates, key=lambda c: (-score(c), c.id))[:limit]

    # =========================================================================
    # Discovery writes
    # =========================================================================

    def upsert_entity_correlation(self, candidate: Correlation, row_dates: Sequence[date]) -> str:
        """
        Create or update the entity-scoped head for ``candidate``'s
        (type, factor shape).

        ``row_dates`` are the days the candidate's statistics were computed
        from; only days outside the stored coverage window add to
        ``data_points``, so re-running discovery over the same range is a
        pure statistics refresh.

        Returns:
            'created' or 'updated'
        """
        candidate.scope = Scope.ENTITY.value
        scope_key = self._scope_key(candidate)
        lock_key = (candidate.entity_id or "", candidate.type, candidate.factor_key)
        coverage_start = min(row_dates).isoformat() if row_dates else None
        coverage_end = max(row_dates).isoformat() if row_dates else None

        with self._lock_for(lock_key):
            for attempt in range(self.config.max_write_retries):
                conn = get_connection(self.db_path)
                try:
                    head = self._fetch_head(conn, scope_key, candidate.type, candidate.factor_key)
                    now = datetime.now().isoformat()

                    if head is None:
                        new = self._fresh_version(candidate, len(row_dates), coverage_start, coverage_end, now)
                        try:
                            self._insert(conn, new)
                        except sqlite3.IntegrityError:
                            conn.rollback()
                            continue
                        self._log_event(conn, new, CREATED)
                        conn.commit()
                        candidate.id = new.id
                        return CREATED

                    if not head.is_active:
                        # Deactivated pattern re-accepted: fork a new version
                        expected = head.row_version
                        head.is_head = False
                        if not self._update(conn, head, expected):
                            conn.rollback()
                            continue
                        new = self._fresh_version(candidate, len(row_dates), coverage_start, coverage_end, now)
                        new.version = head.version + 1
                        new.previous_version_id = head.id
                        new.first_discovered = head.first_discovered
                        try:
                            self._insert(conn, new)
                        except sqlite3.IntegrityError:
                            conn.rollback()
                            continue
                        self._log_event(conn, new, "forked")
                        conn.commit()
                        candidate.id = new.id
                        logger.info(
                            f"Re-discovered deactivated pattern {head.id} for {candidate.entity_id}; "
                            f"forked v{new.version} as {new.id}"
                        )
                        return CREATED

                    expected = head.row_version
                    added = sum(
                        1 for d in row_dates
                        if head.coverage_start is None
                        or d.isoformat() < head.coverage_start
                        or d.isoformat() > head.coverage_end
                    )
                    head.outcome = candidate.outcome
                    head.statistics = candidate.statistics
                    head.pattern = candidate.pattern
                    head.data_points += added
                    head.coverage_start = min(filter(None, [head.coverage_start, coverage_start]), default=None)
                    head.coverage_end = max(filter(None, [head.coverage_end, coverage_end]), default=None)
                    head.last_updated = now
                    self._refresh(head)
                    if not self._update(conn, head, expected):
                        conn.rollback()
                        continue
                    self._log_event(conn, head, UPDATED)
                    conn.commit()
                    candidate.id = head.id
                    return UPDATED
                finally:
                    conn.close()

        raise StaleVersionConflict(
            f"Could not write {candidate.type} pattern for {candidate.entity_id} "
            f"after {self.config.max_write_retries} attempts",
            details={"entity_id": candidate.entity_id, "type": candidate.type},
        )

    def _fresh_version(self, candidate: Correlation, data_points: int,
                       coverage_start: Optional[str], coverage_end: Optional[str], now: str) -> Correlation:
        new = Correlation(
            type=candidate.type,
            factor=candidate.factor,
            outcome=candidate.outcome,
            statistics=candidate.statistics,
            pattern=candidate.pattern,
            scope=Scope.ENTITY.value,
            entity_id=candidate.entity_id,
            first_discovered=now,
            last_updated=now,
            data_points=data_points,
            coverage_start=coverage_start,
            coverage_end=coverage_end,
            holdout_from=coverage_end,
        )
        self._refresh(new)
        return new

    # =========================================================================
    # Validation writes
    # =========================================================================

    def validated_through(self, correlation_id: int, entity_id: str) -> Optional[date]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT validated_through FROM validation_log WHERE correlation_id = ? AND entity_id = ?",
                (correlation_id, entity_id),
            ).fetchone()
        finally:
            conn.close()
        return date.fromisoformat(row["validated_through"]) if row else None

    def record_validation(
        self,
        correlation_id: int,
        entity_id: str,
        confirmed: bool,
        validated_through: date,
    ) -> Tuple[Correlation, bool]:
        """
        Apply one validation trial.

        Returns:
            (updated correlation, whether this trial deactivated it)
        """
        for attempt in range(self.config.max_write_retries):
            conn = get_connection(self.db_path)
            try:
                row = conn.execute("SELECT * FROM correlations WHERE id = ?", (correlation_id,)).fetchone()
                if row is None:
                    raise PulseError(
                        f"Correlation {correlation_id} not found",
                        code="CORRELATION_NOT_FOUND",
                        details={"correlation_id": correlation_id},
                    )
                c = self._row_to_correlation(row)
                expected = c.row_version
                was_active = c.is_active

                if confirmed:
                    c.times_validated += 1
                else:
                    c.times_invalidated += 1
                c.accuracy = round(c.times_validated / c.trials * 100.0, 2)
                c.last_updated = datetime.now().isoformat()
                self._refresh(c)
                if c.accuracy < self.config.decay_accuracy and c.trials > self.config.decay_min_trials:
                    c.is_active = False

                if not self._update(conn, c, expected):
                    conn.rollback()
                    continue
                conn.execute("""
                    INSERT INTO validation_log (correlation_id, entity_id, validated_through)
                    VALUES (?, ?, ?)
                    ON CONFLICT(correlation_id, entity_id)
                    DO UPDATE SET validated_through = excluded.validated_through
                """, (correlation_id, entity_id, validated_through.isoformat()))
                deactivated = was_active and not c.is_active
                self._log_event(conn, c, "deactivated" if deactivated else ("confirmed" if confirmed else "refuted"))
                conn.commit()
                return c, deactivated
            finally:
                conn.close()

        raise StaleVersionConflict(
            f"Could not record validation for correlation {correlation_id}",
            details={"correlation_id": correlation_id},
        )

    # =========================================================================
    # Roll-up
    # =========================================================================

    def contribute_upward(self, entity_id: str, location: Location) -> int:
        """
        Merge this entity's reliable patterns into regional and global records.

        Eligible: active entity-scoped heads with accuracy >= rollup_min_accuracy
        and data_points >= rollup_min_data_points. Each is merged into
        regional(region, category), regional(region) and global.

        Returns:
            number of shared records written
        """
        eligible = [
            c for c in self.list_correlations(scope=Scope.ENTITY.value, entity_id=entity_id, active_only=True)
            if c.accuracy >= self.config.rollup_min_accuracy
            and c.data_points >= self.config.rollup_min_data_points
        ]
        if not eligible:
            logger.debug(f"No patterns from {entity_id} eligible for roll-up")
            return 0

        targets = []
        if location.category:
            targets.append((Scope.REGIONAL.value, "", location.region, location.category))
        targets.append((Scope.REGIONAL.value, "", location.region, ""))
        targets.append((Scope.GLOBAL.value, "", "", ""))

        written = 0
        for source in eligible:
            for scope_key in targets:
                self._merge_into(scope_key, source, entity_id)
                written += 1

        logger.info(f"Rolled up {len(eligible)} patterns from {entity_id} into {written} shared records")
        return written

    def _merge_into(self, scope_key: Tuple[str, str, str, str], source: Correlation, entity_id: str) -> None:
        for attempt in range(self.config.max_write_retries):
            conn = get_connection(self.db_path)
            try:
                with immediate_transaction(conn):
                    shared = self._fetch_head(conn, scope_key, source.type, source.factor_key)
                    now = datetime.now().isoformat()
                    if shared is None:
                        shared = Correlation(
                            type=source.type,
                            factor=source.factor,
                            outcome=Outcome(metric=source.outcome.metric, change_kind=source.outcome.change_kind),
                            pattern=source.pattern,
                            scope=scope_key[0],
                            region=scope_key[2] or None,
                            category=scope_key[3] or None,
                            first_discovered=now,
                            last_updated=now,
                        )
                        self._insert(conn, shared)
                        self._log_event(conn, shared, CREATED)

                    conn.execute("""
                        INSERT INTO contributions (
                            shared_id, entity_id, source_id, r, change, value, baseline,
                            sample_size, data_points, times_validated, times_invalidated, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(shared_id, entity_id) DO UPDATE SET
                            source_id = excluded.source_id, r = excluded.r, change = excluded.change,
                            value = excluded.value, baseline = excluded.baseline,
                            sample_size = excluded.sample_size, data_points = excluded.data_points,
                            times_validated = excluded.times_validated,
                            times_invalidated = excluded.times_invalidated,
                            updated_at = excluded.updated_at
                    """, (
                        shared.id, entity_id, source.id, source.statistics.r, source.outcome.change,
                        source.outcome.value, source.outcome.baseline,
                        max(source.statistics.sample_size, 1), source.data_points,
                        source.times_validated, source.times_invalidated, now,
                    ))

                    agg = conn.execute("""
                        SELECT SUM(sample_size) AS n,
                               SUM(r * sample_size) AS r_sum,
                               SUM(change * sample_size) AS change_sum,
                               SUM(value * sample_size) AS value_sum,
                               SUM(baseline * sample_size) AS baseline_sum,
                               SUM(data_points) AS data_points,
                               SUM(times_validated) AS validated,
                               SUM(times_invalidated) AS invalidated,
                               COUNT(DISTINCT entity_id) AS entities
                        FROM contributions WHERE shared_id = ?
                    """, (shared.id,)).fetchone()

                    n = int(agg["n"])
                    r = agg["r_sum"] / n
                    expected = shared.row_version
                    shared.statistics = Statistics.from_r(r, stats.significance(r, n), n)
                    shared.outcome = Outcome(
                        metric=shared.outcome.metric,
                        value=agg["value_sum"] / n,
                        baseline=agg["baseline_sum"] / n,
                        change=round(agg["change_sum"] / n, 2),
                        change_kind=shared.outcome.change_kind,
                    )
                    shared.data_points = int(agg["data_points"])
                    shared.entities_contributing = int(agg["entities"])
                    shared.times_validated = int(agg["validated"])
                    shared.times_invalidated = int(agg["invalidated"])
                    trials = shared.times_validated + shared.times_invalidated
                    shared.accuracy = round(shared.times_validated / trials * 100.0, 2) if trials else 0.0
                    shared.last_updated = now
                    self._refresh(shared)

                    if not self._update(conn, shared, expected):
                        raise StaleVersionConflict("Shared record moved during roll-up")
                    self._log_event(conn, shared, "rollup")
                return
            except StaleVersionConflict:
                logger.debug(f"Roll-up conflict on {scope_key} (attempt {attempt + 1})")
                continue
            finally:
                conn.close()

        raise StaleVersionConflict(
            f"Could not merge pattern {source.id} into {scope_key[0]} scope",
            details={"source_id": source.id, "scope": scope_key[0]},
        )

    # =========================================================================
    # Resolution
    # =========================================================================

    def resolve(
        self,
        entity_id: str,
        region: Optional[str],
        category: Optional[str],
        correlation_type: Optional[str] = None,
        min_confidence: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> List[Correlation]:
        """
        Applicable patterns, most specific first.

        Tiers: entity, regional(region, category), regional(region), global.
        Patterns with the same (type, factor shape) are kept only at their
        most specific tier. Result is sorted by confidence descending, then
        tier, then id.

        There is no category-only global tier: global records never carry a
        category, so ``contribute_upward`` has nothing to write there.
        """
        min_confidence = self.config.resolve_min_confidence if min_confidence is None else min_confidence
        tiers: List[Tuple[str, tuple]] = [
            ("scope = 'entity' AND entity_id = ?", (entity_id,)),
        ]
        if region:
            if category:
                tiers.append(("scope = 'regional' AND region = ? AND category = ?", (region, category)))
            tiers.append(("scope = 'regional' AND region = ? AND category = ''", (region,)))
        tiers.append(("scope = 'global'", ()))

        type_clause = " AND type = ?" if correlation_type else ""
        seen = set()
        resolved: List[Tuple[int, Correlation]] = []

        conn = get_connection(self.db_path)
        try:
            with query_deadline(conn, timeout, "pattern resolution"):
                for tier, (clause, params) in enumerate(tiers):
                    full_params = params + (min_confidence,)
                    if correlation_type:
                        full_params = full_params + (correlation_type,)
                    rows = conn.execute(
                        f"SELECT * FROM correlations WHERE {clause} "
                        f"AND is_active = 1 AND is_head = 1 AND confidence >= ?{type_clause} "
                        f"ORDER BY confidence DESC, id",
                        full_params,
                    ).fetchall()
                    for row in rows:
                        c = self._row_to_correlation(row)
                        key = (c.type, c.factor_key)
                        if key in seen:
                            continue
                        seen.add(key)
                        resolved.append((tier, c))
        except (sqlite3.Error, UpstreamUnavailable) as e:
            raise ResolutionExhausted(f"Pattern resolution failed: {e}") from e
        finally:
            conn.close()

        resolved.sort(key=lambda tc: (-tc[1].confidence, tc[0], tc[1].id))
        return [c for _, c in resolved]

    def record_application(self, correlation_ids: Iterable[int]) -> None:
        """Atomically bump ``times_applied`` for patterns used in a forecast."""
        ids = sorted(set(correlation_ids))
        if not ids:
            return
        placeholders = ",".join("?" for _ in ids)
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"UPDATE correlations SET times_applied = times_applied + 1, last_applied = ? "
                f"WHERE id IN ({placeholders})",
                (datetime.now().isoformat(), *ids),
            )
            conn.commit()
        finally:
            conn.close()
