"""
Repository for triggered alerts
Idempotent batch upsert keyed by (alert_id, ts), plus read queries for the API and CLI
"""
import json
import logging
import threading
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

import psycopg2
from psycopg2.extras import RealDictCursor

from alerts_core.config import AlertsConfig
from alerts_core.exceptions import PersistenceError
from alerts_core.models import Alert, AlertLevel, UpsertResult

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = [
    "CREATE EXTENSION IF NOT EXISTS pgcrypto",
    "CREATE SCHEMA IF NOT EXISTS alerts",
    """
    CREATE TABLE IF NOT EXISTS alerts.alerts (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        alert_id TEXT NOT NULL,
        ts DATE NOT NULL,
        level TEXT NOT NULL CHECK (level IN ('red', 'amber', 'green')),
        message TEXT NOT NULL,
        payload JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (alert_id, ts)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_alerts_alert_id ON alerts.alerts(alert_id)",
    "CREATE INDEX IF NOT EXISTS idx_alerts_ts ON alerts.alerts(ts DESC)",
    "CREATE INDEX IF NOT EXISTS idx_alerts_level ON alerts.alerts(level)",
    """
    CREATE TABLE IF NOT EXISTS alert_rules (
        alert_id TEXT PRIMARY KEY,
        metric_id TEXT NOT NULL,
        level TEXT NOT NULL CHECK (level IN ('red', 'amber', 'green')),
        type TEXT NOT NULL DEFAULT 'threshold',
        condition TEXT NOT NULL,
        message TEXT NOT NULL,
        threshold NUMERIC,
        units TEXT,
        "window" TEXT,
        inputs JSONB NOT NULL DEFAULT '[]'::jsonb,
        notes TEXT,
        trend_window_points INTEGER,
        trend_rule TEXT,
        active BOOLEAN NOT NULL DEFAULT true
    )
    """,
]

UPSERT_SQL = """
    INSERT INTO alerts.alerts (alert_id, ts, level, message, payload)
    VALUES (%s, %s, %s, %s, %s)
    ON CONFLICT (alert_id, ts)
    DO UPDATE SET
        level = EXCLUDED.level,
        message = EXCLUDED.message,
        payload = EXCLUDED.payload,
        updated_at = NOW()
    RETURNING (xmax = 0) AS inserted
"""


class AlertRepository:
    """PostgreSQL alert store"""

    def __init__(self, dsn: str):
        """Initialize repository with database connection string"""
        self.dsn = dsn

    def _get_connection(self):
        """Get database connection"""
        return psycopg2.connect(self.dsn)

    def initialize(self) -> None:
        """Create the alerts schema, table and indexes if missing"""
        conn = self._get_connection()
        try:
            with conn.cursor() as cur:
                for statement in SCHEMA_STATEMENTS:
                    cur.execute(statement)
            conn.commit()
            logger.info("Alert store schema initialized")
        except psycopg2.Error as e:
            conn.rollback()
            raise PersistenceError(f"Failed to initialize alert store: {e}") from e
        finally:
            conn.close()

    def upsert_alerts(self, alerts: List[Alert]) -> UpsertResult:
        """
        Insert or update a batch of alerts in one transaction

        Returns:
            UpsertResult with inserted/updated counts

        Raises:
            PersistenceError: on any database error (the batch is rolled back)
        """
        if not alerts:
            return UpsertResult()

        try:
            conn = self._get_connection()
        except psycopg2.Error as e:
            raise PersistenceError(f"Cannot connect to alert store: {e}") from e

        result = UpsertResult()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                for alert in alerts:
                    data = alert.to_db_dict()
                    cur.execute(UPSERT_SQL, (
                        data['alert_id'],
                        data['ts'],
                        data['level'],
                        data['message'],
                        json.dumps(data['payload']),
                    ))
                    row = cur.fetchone()
                    if row and row['inserted']:
                        result.inserted += 1
                    else:
                        result.updated += 1
            conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            logger.error(f"Alert upsert rolled back: {e}", exc_info=True)
            raise PersistenceError(f"Failed to upsert {len(alerts)} alerts: {e}") from e
        finally:
            conn.close()

        logger.info(f"Upserted {len(alerts)} alerts: {result.inserted} inserted, {result.updated} updated")
        return result

    def get_recent(self, limit: int = 50) -> List[Alert]:
        """Most recent alerts by observation date"""
        return self.query(limit=limit)

    def query(
        self,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        level: Optional[AlertLevel] = None,
        limit: int = 50
    ) -> List[Alert]:
        """Query alerts with optional date range and level filters"""
        conditions = []
        params: List[Any] = []

        if from_date:
            conditions.append("ts >= %s")
            params.append(from_date)
        if to_date:
            conditions.append("ts <= %s")
            params.append(to_date)
        if level:
            conditions.append("level = %s")
            params.append(AlertLevel(level).value)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)

        conn = self._get_connection()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(f"""
                    SELECT alert_id, ts, level, message, payload, created_at, updated_at
                    FROM alerts.alerts
                    {where}
                    ORDER BY ts DESC, created_at DESC
                    LIMIT %s
                """, params)
                return [self._row_to_alert(dict(row)) for row in cur.fetchall()]
        finally:
            conn.close()

    def get_stats(self) -> Dict[str, Any]:
        """Totals by level and the latest observation date"""
        conn = self._get_connection()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("""
                    SELECT level, COUNT(*) AS count, MAX(ts) AS latest_ts
                    FROM alerts.alerts
                    GROUP BY level
                """)
                rows = cur.fetchall()
        finally:
            conn.close()

        by_level = {row['level']: row['count'] for row in rows}
        latest = [row['latest_ts'] for row in rows if row['latest_ts']]
        return {
            'total': sum(by_level.values()),
            'by_level': by_level,
            'latest_ts': max(latest).isoformat() if latest else None,
        }

    def _row_to_alert(self, row: Dict[str, Any]) -> Alert:
        payload = row.get('payload') or {}
        if isinstance(payload, str):
            payload = json.loads(payload)
        return Alert(
            alert_id=row['alert_id'],
            ts=row['ts'],
            level=row['level'],
            message=row['message'],
            payload=payload,
            created_at=row.get('created_at'),
            updated_at=row.get('updated_at'),
        )


class InMemoryAlertRepository:
    """Process-local alert store with the same contract as AlertRepository"""

    def __init__(self):
        self._alerts: Dict[tuple, Alert] = {}
        self._lock = threading.Lock()

    def initialize(self) -> None:
        logger.info("Using in-memory alert store")

    def upsert_alerts(self, alerts: List[Alert]) -> UpsertResult:
        # Validate the whole batch first so a bad item leaves the store untouched
        for alert in alerts:
            if not isinstance(alert, Alert):
                raise PersistenceError(f"Cannot persist {type(alert).__name__} as an alert")

        result = UpsertResult()
        now = datetime.now(timezone.utc)
        with self._lock:
            for alert in alerts:
                existing = self._alerts.get(alert.dedup_key)
                if existing is None:
                    self._alerts[alert.dedup_key] = alert.model_copy(
                        update={'created_at': now, 'updated_at': now}, deep=True
                    )
                    result.inserted += 1
                else:
                    self._alerts[alert.dedup_key] = alert.model_copy(
                        update={'created_at': existing.created_at, 'updated_at': now}, deep=True
                    )
                    result.updated += 1
        return result

    def get_recent(self, limit: int = 50) -> List[Alert]:
        return self.query(limit=limit)

    def query(
        self,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        level: Optional[AlertLevel] = None,
        limit: int = 50
    ) -> List[Alert]:
        with self._lock:
            alerts = list(self._alerts.values())

        if from_date:
            alerts = [a for a in alerts if a.ts >= from_date]
        if to_date:
            alerts = [a for a in alerts if a.ts <= to_date]
        if level:
            alerts = [a for a in alerts if a.level == AlertLevel(level)]

        alerts.sort(key=lambda a: (a.ts, a.created_at), reverse=True)
        # Callers get copies so edits never reach the store
        return [a.model_copy(deep=True) for a in alerts[:limit]]

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            alerts = list(self._alerts.values())

        by_level: Dict[str, int] = {}
        for alert in alerts:
            by_level[alert.level.value] = by_level.get(alert.level.value, 0) + 1
        latest = max((a.ts for a in alerts), default=None)
        return {
            'total': len(alerts),
            'by_level': by_level,
            'latest_ts': latest.isoformat() if latest else None,
        }


def create_repository(config: AlertsConfig):
    """PostgreSQL when ALERTS_DATABASE_URL is set, otherwise in-memory"""
    if config.alerts_database_url:
        logger.info(f"Using PostgreSQL alert store at {config.describe_database()}")
        return AlertRepository(config.alerts_database_url)
    logger.warning("ALERTS_DATABASE_URL not set, alerts will only be kept in memory")
    return InMemoryAlertRepository()
