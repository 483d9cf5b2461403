"""
Rule stores and the rule cache

Rules live either in the alert_rules table or in YAML/JSON files. The
orchestrator owns a RuleCache and calls refresh() at the start of every run.
"""
import json
import logging
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import psycopg2
import yaml
from psycopg2.extras import RealDictCursor
from pydantic import ValidationError as ModelValidationError

from alerts_core.config import AlertsConfig
from alerts_core.exceptions import ConfigurationError
from alerts_core.models import Rule

logger = logging.getLogger(__name__)

RULE_FILE_SUFFIXES = ('.yaml', '.yml', '.json')


def _build_rules(records: List[Dict[str, Any]], source: str) -> List[Rule]:
    rules = []
    for index, record in enumerate(records):
        if not isinstance(record, dict):
            raise ConfigurationError(f"Rule #{index} in {source} is not a mapping")
        try:
            rules.append(Rule.model_validate(record))
        except ModelValidationError as e:
            rule_id = record.get('alert_id') or record.get('alertId') or f"#{index}"
            raise ConfigurationError(f"Invalid rule {rule_id} in {source}: {e}") from e
    return rules


class PostgresRuleStore:
    """Reads active rules from the alert_rules table"""

    def __init__(self, dsn: str):
        self.dsn = dsn

    def _get_connection(self):
        return psycopg2.connect(self.dsn)

    def get_active_rules(self) -> List[Rule]:
        try:
            conn = self._get_connection()
        except psycopg2.Error as e:
            raise ConfigurationError(f"Cannot connect to rule store: {e}") from e

        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("""
                    SELECT alert_id, metric_id, level, type, condition, message,
                           threshold, units, "window", inputs, notes,
                           trend_window_points, trend_rule, active
                    FROM alert_rules
                    WHERE active = true
                    ORDER BY alert_id
                """)
                rows = cur.fetchall()
        except psycopg2.Error as e:
            raise ConfigurationError(f"Failed to read alert_rules: {e}") from e
        finally:
            conn.close()

        return _build_rules([self._row_to_record(dict(row)) for row in rows], 'alert_rules')

    def _row_to_record(self, row: Dict[str, Any]) -> Dict[str, Any]:
        window_points = row.pop('trend_window_points', None)
        trend_rule = row.pop('trend_rule', None)
        if window_points and trend_rule:
            row['trend'] = {'window_points': window_points, 'rule': trend_rule}

        # NUMERIC columns come back as Decimal
        if row.get('threshold') is not None:
            row['threshold'] = float(row['threshold'])
        return {key: value for key, value in row.items() if value is not None}


class FileRuleStore:
    """
    Reads rules from a YAML or JSON file, or from every rule file in a directory.

    A file holds either a top-level list of rules or a mapping with a 'rules' key.
    Inactive rules are filtered out.
    """

    def __init__(self, path: str):
        self.path = Path(path)

    def get_active_rules(self) -> List[Rule]:
        if not self.path.exists():
            raise ConfigurationError(f"Rules path does not exist: {self.path}")

        if self.path.is_dir():
            files = sorted(p for p in self.path.iterdir() if p.suffix in RULE_FILE_SUFFIXES)
        else:
            files = [self.path]

        rules: List[Rule] = []
        for file_path in files:
            rules.extend(_build_rules(self._read_file(file_path), str(file_path)))

        seen = set()
        for rule in rules:
            if rule.alert_id in seen:
                raise ConfigurationError(f"Duplicate alert_id in {self.path}: {rule.alert_id}")
            seen.add(rule.alert_id)

        active = [rule for rule in rules if rule.active]
        logger.debug(f"Loaded {len(active)} active rules from {len(files)} file(s)")
        return active

    def _read_file(self, file_path: Path) -> List[Dict[str, Any]]:
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                if file_path.suffix == '.json':
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Failed to read rules from {file_path}: {e}") from e

        if data is None:
            return []
        if isinstance(data, dict):
            data = data.get('rules', [])
        if not isinstance(data, list):
            raise ConfigurationError(f"Rules file must hold a list of rules: {file_path}")
        return data


class UnconfiguredRuleStore:
    """Stand-in when no rule source is set; every load fails"""

    def get_active_rules(self) -> List[Rule]:
        raise ConfigurationError("No rule source configured: set RULES_PATH or ALERTS_DATABASE_URL")


class RuleCache:
    """
    Cached view of the active rule set

    refresh() always reloads. get() serves the cached rules and reloads only
    when nothing is cached or the optional TTL has expired.
    """

    def __init__(self, store, ttl_seconds: Optional[int] = None):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._rules: Optional[List[Rule]] = None
        self._loaded_monotonic: Optional[float] = None
        self.loaded_at: Optional[datetime] = None
        self._lock = threading.Lock()

    def refresh(self) -> List[Rule]:
        rules = self.store.get_active_rules()
        with self._lock:
            self._rules = list(rules)
            self._loaded_monotonic = time.monotonic()
            self.loaded_at = datetime.now(timezone.utc)
        logger.info(f"Rule cache refreshed: {len(rules)} active rules")
        return list(rules)

    def get(self) -> List[Rule]:
        with self._lock:
            rules = self._rules
            expired = (
                self.ttl_seconds is not None
                and self._loaded_monotonic is not None
                and time.monotonic() - self._loaded_monotonic > self.ttl_seconds
            )
        if rules is None or expired:
            return self.refresh()
        return list(rules)

    def invalidate(self) -> None:
        with self._lock:
            self._rules = None
            self._loaded_monotonic = None


def create_rule_store(config: AlertsConfig):
    """
    File store when RULES_PATH is set, then the alert_rules table.

    With neither configured the returned store fails on load, so the error
    surfaces as a rule-load failure of the run rather than at startup.
    """
    if config.rules_path:
        logger.info(f"Using file rule store at {config.rules_path}")
        return FileRuleStore(config.rules_path)
    if config.alerts_database_url:
        logger.info(f"Using PostgreSQL rule store at {config.describe_database()}")
        return PostgresRuleStore(config.alerts_database_url)
    logger.warning("No rule source configured: set RULES_PATH or ALERTS_DATABASE_URL")
    return UnconfiguredRuleStore()
