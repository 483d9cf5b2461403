"""
Alert Run Orchestrator - health gate, rule load, evaluation fan-out, batch persist
"""
import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from alerts_core.config import AlertsConfig
from alerts_core.exceptions import (
    AlertsEngineError,
    ConfigurationError,
    ConnectivityError,
    DataUnavailable,
    PersistenceError,
    RunCancelledError,
    RunInProgressError,
    ValidationError,
)
from alerts_core.metrics_client import MetricsClient
from alerts_core.models import Alert, EvaluationResult, Rule, RunSummary
from alerts_core.repository import create_repository
from alerts_core.rules import RuleCache, create_rule_store
from services.alert_engine import RuleEvaluator

logger = logging.getLogger(__name__)


class RunStage(str, Enum):
    INIT = "init"
    HEALTH_CHECK = "health_check"
    LOAD_RULES = "load_rules"
    EVALUATE = "evaluate"
    PERSIST = "persist"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class MetricObservation:
    """Current value of a metric plus the context needed to build an alert"""
    value: float
    ts: str
    trend_values: Optional[List[float]] = None
    oficial_fx_source: Optional[str] = None

    @property
    def observation_date(self) -> date:
        try:
            return date.fromisoformat(self.ts[:10])
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Unparseable observation timestamp: {self.ts!r}") from e

    def metadata(self) -> Dict[str, Any]:
        meta = {'base_ts': self.ts}
        if self.oficial_fx_source:
            meta['oficial_fx_source'] = self.oficial_fx_source
        return meta


@dataclass
class RuleOutcome:
    """What one worker produced for one rule"""
    alert_id: str
    evaluated: bool = False
    alert: Optional[Alert] = None
    result: Optional[EvaluationResult] = None
    error: Optional[str] = None
    cancelled: bool = False


@dataclass
class _RunState:
    run_id: str
    started: float
    ran_at: datetime
    outcomes: List[RuleOutcome] = field(default_factory=list)


class AlertRunOrchestrator:
    """
    Runs one alert evaluation pass end to end.

    Fails closed on systemic problems (health, rule load, persistence) and
    fails open per rule. Only one run may be active per instance.
    """

    def __init__(
        self,
        metrics_client: MetricsClient,
        rule_cache: RuleCache,
        repository,
        evaluator: Optional[RuleEvaluator] = None,
        max_workers: int = 8
    ):
        self.metrics_client = metrics_client
        self.rule_cache = rule_cache
        self.repository = repository
        self.evaluator = evaluator or RuleEvaluator()
        self.max_workers = max(1, max_workers)

        self.stage = RunStage.INIT
        self.last_run: Optional[RunSummary] = None
        self._run_lock = threading.Lock()

        logger.info(f"AlertRunOrchestrator initialized with {self.max_workers} workers")

    @classmethod
    def from_config(cls, config: Optional[AlertsConfig] = None) -> 'AlertRunOrchestrator':
        """Wire the default collaborators from configuration"""
        config = config or AlertsConfig()
        return cls(
            metrics_client=MetricsClient(config),
            rule_cache=RuleCache(create_rule_store(config), ttl_seconds=config.rules_cache_ttl_seconds),
            repository=create_repository(config),
            max_workers=config.max_workers,
        )

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def run_once(self, cancel_event: Optional[threading.Event] = None) -> RunSummary:
        """
        Execute one run.

        Returns:
            RunSummary of the completed run

        Raises:
            RunInProgressError: another run is active on this orchestrator
            ConnectivityError: metrics source failed the health gate
            ConfigurationError: rules could not be loaded
            RunCancelledError: cancel_event was set before persistence
            PersistenceError: the alert batch could not be stored
        """
        if not self._run_lock.acquire(blocking=False):
            raise RunInProgressError("An alert run is already in progress", stage=self.stage.value)

        state = _RunState(
            run_id=uuid.uuid4().hex[:12],
            started=time.monotonic(),
            ran_at=datetime.now(timezone.utc),
        )
        try:
            return self._run(state, cancel_event)
        except AlertsEngineError as e:
            self.stage = RunStage.FAILED
            logger.error(f"[run {state.run_id}] Alert run failed: {e}", exc_info=True)
            raise
        finally:
            self._run_lock.release()

    def _run(self, state: _RunState, cancel_event: Optional[threading.Event]) -> RunSummary:
        run_id = state.run_id
        self.stage = RunStage.INIT
        logger.info("=" * 60)
        logger.info(f"[run {run_id}] Starting alert run")
        logger.info("=" * 60)

        self._check_health(run_id, cancel_event)
        rules = self._load_rules(run_id)

        self.stage = RunStage.EVALUATE
        state.outcomes = self._evaluate_rules(rules, cancel_event)
        if self._is_cancelled(cancel_event) or any(o.cancelled for o in state.outcomes):
            raise RunCancelledError("Run cancelled before persistence", stage=RunStage.EVALUATE.value)

        alerts = [o.alert for o in state.outcomes if o.alert is not None]

        self.stage = RunStage.PERSIST
        inserted = updated = 0
        if alerts:
            try:
                upsert = self.repository.upsert_alerts(alerts)
            except Exception as e:
                raise PersistenceError(
                    f"Failed to persist {len(alerts)} alerts: {e}", stage=RunStage.PERSIST.value
                ) from e
            inserted, updated = upsert.inserted, upsert.updated
        else:
            logger.info(f"[run {run_id}] No alerts triggered, nothing to persist")

        summary = self._build_summary(state, alerts, inserted, updated)
        self.stage = RunStage.COMPLETE
        self.last_run = summary

        logger.info("=" * 60)
        logger.info(f"[run {run_id}] Alert run completed in {summary.duration_seconds:.2f}s")
        logger.info(f"Rules evaluated: {summary.rules_evaluated}, triggered: {summary.rules_triggered}, "
                    f"skipped: {summary.rules_skipped}")
        logger.info(f"Alerts: {summary.alert_count} ({inserted} inserted, {updated} updated)")
        logger.info("=" * 60)
        return summary

    # =========================================================================
    # STAGES
    # =========================================================================

    def _check_health(self, run_id: str, cancel_event: Optional[threading.Event]) -> None:
        self.stage = RunStage.HEALTH_CHECK
        try:
            health = self.metrics_client.get_health(cancel_event=cancel_event)
        except RunCancelledError as e:
            raise RunCancelledError(e.message, stage=RunStage.HEALTH_CHECK.value) from e
        except Exception as e:
            raise ConnectivityError(
                f"Metrics source health check failed: {e}", stage=RunStage.HEALTH_CHECK.value
            ) from e

        if not health.is_healthy:
            logger.warning(f"[run {run_id}] Metrics source reports status '{health.status}', continuing")
        else:
            logger.info(f"[run {run_id}] Metrics source healthy, last metric at {health.last_metric_ts}")

    def _load_rules(self, run_id: str) -> List[Rule]:
        self.stage = RunStage.LOAD_RULES
        try:
            rules = self.rule_cache.refresh()
        except Exception as e:
            raise ConfigurationError(
                f"Failed to load rules: {e}", stage=RunStage.LOAD_RULES.value
            ) from e

        if not rules:
            logger.warning(f"[run {run_id}] No active rules loaded")
        else:
            logger.info(f"[run {run_id}] Loaded {len(rules)} active rules")
        return rules

    def _evaluate_rules(self, rules: List[Rule], cancel_event: Optional[threading.Event]) -> List[RuleOutcome]:
        if not rules:
            return []

        if self.max_workers == 1 or len(rules) == 1:
            return [self._evaluate_one(rule, cancel_event) for rule in rules]

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(rules)),
                                thread_name_prefix='alert-rule') as executor:
            return list(executor.map(lambda rule: self._evaluate_one(rule, cancel_event), rules))

    def _evaluate_one(self, rule: Rule, cancel_event: Optional[threading.Event]) -> RuleOutcome:
        outcome = RuleOutcome(alert_id=rule.alert_id)
        if self._is_cancelled(cancel_event):
            outcome.cancelled = True
            return outcome

        start = time.monotonic()
        try:
            observation = self._fetch_observation(rule, cancel_event)
            result = self.evaluator.evaluate(
                rule,
                observation.value,
                trend_values=observation.trend_values,
                metadata=observation.metadata(),
            )
            outcome.evaluated = True
            outcome.result = result

            if result.triggered:
                outcome.alert = Alert(
                    alert_id=rule.alert_id,
                    ts=observation.observation_date,
                    level=rule.level,
                    message=rule.message,
                    payload=result.payload.to_dict() if result.payload else {},
                )

            duration_ms = int((time.monotonic() - start) * 1000)
            logger.info(
                f"Rule {rule.alert_id} ({rule.metric_id}): value={result.value} "
                f"condition='{rule.condition}' triggered={result.triggered} "
                f"reason={result.reason.value} duration={duration_ms}ms"
            )

        except RunCancelledError:
            outcome.cancelled = True
        except DataUnavailable as e:
            outcome.error = str(e)
            logger.warning(f"Rule {rule.alert_id} skipped, no data for {rule.metric_id}: {e}")
        except Exception as e:
            outcome.error = str(e)
            logger.error(f"Rule {rule.alert_id} failed: {e}", exc_info=True)

        return outcome

    def _fetch_observation(self, rule: Rule, cancel_event: Optional[threading.Event]) -> MetricObservation:
        """Fetch the data the rule needs: a series for trend/window rules, otherwise the latest value"""
        if rule.needs_series:
            series = self.metrics_client.get_series(rule.metric_id, cancel_event=cancel_event)
            latest = series.latest
            if latest is None:
                raise DataUnavailable(f"Empty series for {rule.metric_id}")

            trend_values = series.values if rule.trend is not None else None
            return MetricObservation(
                value=latest.value,
                ts=latest.ts,
                trend_values=trend_values,
                oficial_fx_source=latest.oficial_fx_source,
            )

        latest_values = self.metrics_client.get_latest_values([rule.metric_id], cancel_event=cancel_event)
        if rule.metric_id in latest_values.missing:
            raise DataUnavailable(f"Metric {rule.metric_id} reported missing by source")
        summary = latest_values.find(rule.metric_id)
        if summary is None:
            raise DataUnavailable(f"Metric {rule.metric_id} not found in latest values")

        return MetricObservation(
            value=summary.value,
            ts=summary.ts,
            oficial_fx_source=summary.oficial_fx_source,
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _is_cancelled(self, cancel_event: Optional[threading.Event]) -> bool:
        return cancel_event is not None and cancel_event.is_set()

    def _build_summary(self, state: _RunState, alerts: List[Alert], inserted: int, updated: int) -> RunSummary:
        by_level: Dict[str, int] = {}
        for alert in alerts:
            by_level[alert.level.value] = by_level.get(alert.level.value, 0) + 1

        return RunSummary(
            run_id=state.run_id,
            ran_at=state.ran_at,
            alert_count=len(alerts),
            alerts_by_level=by_level,
            inserted=inserted,
            updated=updated,
            rules_evaluated=sum(1 for o in state.outcomes if o.evaluated),
            rules_triggered=len(alerts),
            rules_skipped=sum(1 for o in state.outcomes if not o.evaluated),
            errors=[{'alert_id': o.alert_id, 'error': o.error} for o in state.outcomes if o.error],
            duration_seconds=time.monotonic() - state.started,
        )
