"""
Tests for AlertRunOrchestrator

Metrics client and rule store are mocked; alerts go to the in-memory store.
"""
import threading

import pytest
from datetime import date
from unittest.mock import Mock

from alerts_core.config import AlertsConfig
from alerts_core.engine import AlertRunOrchestrator, RunStage
from alerts_core.exceptions import (
    ConfigurationError,
    ConnectivityError,
    DataUnavailable,
    PersistenceError,
    RunCancelledError,
    RunInProgressError,
)
from alerts_core.models import AlertLevel, LatestValues, MetricsHealth
from alerts_core.repository import InMemoryAlertRepository
from alerts_core.rules import RuleCache
from tests.fixtures.sample_data import build_latest, build_series


@pytest.fixture
def rule_store():
    store = Mock()
    store.get_active_rules.return_value = []
    return store


@pytest.fixture
def repository():
    return InMemoryAlertRepository()


@pytest.fixture
def orchestrator(healthy_metrics_client, rule_store, repository):
    return AlertRunOrchestrator(
        metrics_client=healthy_metrics_client,
        rule_cache=RuleCache(rule_store),
        repository=repository,
        max_workers=1,
    )


def serve_latest(values):
    """side_effect for get_latest_values serving {metric_id: value}"""
    def _serve(metric_ids, cancel_event=None):
        metric_id = metric_ids[0]
        if metric_id not in values:
            return LatestValues(missing=[metric_id])
        return build_latest(metric_id, values[metric_id], ts='2025-09-01T03:00:00Z')
    return _serve


# =============================================================================
# HEALTH GATE
# =============================================================================

class TestHealthGate:
    """Tests for the HEALTH_CHECK stage"""

    def test_unreachable_source_is_fatal(self, orchestrator, healthy_metrics_client, rule_store, repository):
        healthy_metrics_client.get_health.side_effect = ConnectivityError('refused')

        with pytest.raises(ConnectivityError) as exc_info:
            orchestrator.run_once()

        assert exc_info.value.stage == 'health_check'
        assert isinstance(exc_info.value.__cause__, ConnectivityError)
        rule_store.get_active_rules.assert_not_called()
        healthy_metrics_client.get_latest_values.assert_not_called()
        assert repository.get_recent() == []
        assert orchestrator.last_run is None
        assert orchestrator.stage == RunStage.FAILED

    def test_unexpected_health_error_wrapped(self, orchestrator, healthy_metrics_client):
        healthy_metrics_client.get_health.side_effect = RuntimeError('boom')
        with pytest.raises(ConnectivityError):
            orchestrator.run_once()

    def test_degraded_status_still_runs(self, orchestrator, healthy_metrics_client, rule_store, make_rule):
        healthy_metrics_client.get_health.return_value = MetricsHealth(status='degraded')
        rule_store.get_active_rules.return_value = [make_rule()]
        healthy_metrics_client.get_latest_values.side_effect = serve_latest({'ratio.reserves_to_base': 0.001})

        summary = orchestrator.run_once()
        assert summary.alert_count == 1


# =============================================================================
# RULE LOADING
# =============================================================================

class TestRuleLoading:
    """Tests for the LOAD_RULES stage"""

    def test_load_failure_is_fatal(self, orchestrator, rule_store):
        rule_store.get_active_rules.side_effect = ConfigurationError('bad yaml')

        with pytest.raises(ConfigurationError) as exc_info:
            orchestrator.run_once()
        assert exc_info.value.stage == 'load_rules'
        assert orchestrator.last_run is None

    def test_missing_rule_source_fails_at_load_rules(self, clean_env, healthy_metrics_client):
        """Wiring from an empty environment succeeds; the run fails at LOAD_RULES"""
        orchestrator = AlertRunOrchestrator.from_config(AlertsConfig())
        orchestrator.metrics_client = healthy_metrics_client

        with pytest.raises(ConfigurationError) as exc_info:
            orchestrator.run_once()

        assert exc_info.value.stage == 'load_rules'
        assert orchestrator.stage == RunStage.FAILED

    def test_zero_rules_completes(self, healthy_metrics_client, rule_store):
        repository = Mock()
        orchestrator = AlertRunOrchestrator(healthy_metrics_client, RuleCache(rule_store), repository)

        summary = orchestrator.run_once()

        assert summary.alert_count == 0
        assert summary.rules_evaluated == 0
        repository.upsert_alerts.assert_not_called()
        assert orchestrator.stage == RunStage.COMPLETE

    def test_rules_reloaded_every_run(self, orchestrator, rule_store):
        orchestrator.run_once()
        orchestrator.run_once()
        assert rule_store.get_active_rules.call_count == 2


# =============================================================================
# EVALUATION
# =============================================================================

class TestEvaluation:
    """Tests for the EVALUATE stage"""

    def test_latest_value_rule_produces_alert(self, orchestrator, healthy_metrics_client, rule_store,
                                              repository, make_rule):
        rule_store.get_active_rules.return_value = [make_rule(level='amber')]
        healthy_metrics_client.get_latest_values.side_effect = serve_latest({'ratio.reserves_to_base': 0.0015})

        summary = orchestrator.run_once()

        assert summary.alert_count == 1
        assert summary.inserted == 1
        assert summary.alerts_by_level == {'amber': 1}
        alert = repository.get_recent()[0]
        assert alert.alert_id == 'reserves_low'
        assert alert.ts == date(2025, 9, 1)
        assert alert.level == AlertLevel.AMBER
        assert alert.message == 'Reserves coverage critically low'
        assert alert.payload['base_ts'] == '2025-09-01T03:00:00Z'
        assert alert.payload['value'] == 0.0015
        healthy_metrics_client.get_series.assert_not_called()

    def test_not_triggered_rule_produces_nothing(self, orchestrator, healthy_metrics_client, rule_store,
                                                 repository, make_rule):
        rule_store.get_active_rules.return_value = [make_rule()]
        healthy_metrics_client.get_latest_values.side_effect = serve_latest({'ratio.reserves_to_base': 0.5})

        summary = orchestrator.run_once()
        assert summary.rules_evaluated == 1
        assert summary.alert_count == 0
        assert repository.get_recent() == []

    def test_missing_metric_skipped(self, orchestrator, healthy_metrics_client, rule_store, make_rule):
        rule_store.get_active_rules.return_value = [
            make_rule(alert_id='a', metric_id='missing.metric'),
            make_rule(alert_id='b'),
        ]
        healthy_metrics_client.get_latest_values.side_effect = serve_latest({'ratio.reserves_to_base': 0.001})

        summary = orchestrator.run_once()

        assert summary.rules_skipped == 1
        assert summary.alert_count == 1
        assert summary.errors[0]['alert_id'] == 'a'

    def test_trend_rule_reads_series(self, orchestrator, healthy_metrics_client, rule_store, repository, make_rule):
        rule = make_rule(
            alert_id='cpi_momentum', metric_id='pct.cpi.mom', type='threshold_with_trend',
            condition='value > 0.03', trend={'window_points': 5, 'rule': 'at_least_4_of_5_increasing'},
        )
        rule_store.get_active_rules.return_value = [rule]
        healthy_metrics_client.get_series.return_value = build_series(
            'pct.cpi.mom', [0.01, 0.02, 0.025, 0.03, 0.035, 0.04]
        )

        summary = orchestrator.run_once()

        assert summary.alert_count == 1
        assert repository.get_recent()[0].ts == date(2025, 9, 6)
        healthy_metrics_client.get_latest_values.assert_not_called()

    def test_windowed_rule_uses_last_point(self, orchestrator, healthy_metrics_client, rule_store,
                                           repository, make_rule):
        rule_store.get_active_rules.return_value = [make_rule(window='7d')]
        healthy_metrics_client.get_series.return_value = build_series(
            'ratio.reserves_to_base', [0.5, 0.4, 0.001]
        )

        summary = orchestrator.run_once()

        assert summary.alert_count == 1
        assert repository.get_recent()[0].ts == date(2025, 9, 3)

    def test_empty_series_skipped(self, orchestrator, healthy_metrics_client, rule_store, make_rule):
        rule_store.get_active_rules.return_value = [make_rule(window='7d')]
        healthy_metrics_client.get_series.return_value = build_series('ratio.reserves_to_base', [])

        summary = orchestrator.run_once()
        assert summary.rules_skipped == 1
        assert summary.alert_count == 0

    def test_series_not_found_skipped(self, orchestrator, healthy_metrics_client, rule_store, make_rule):
        rule_store.get_active_rules.return_value = [make_rule(window='7d')]
        healthy_metrics_client.get_series.side_effect = DataUnavailable('404')

        summary = orchestrator.run_once()
        assert summary.rules_skipped == 1

    def test_one_rule_failure_does_not_stop_others(self, orchestrator, healthy_metrics_client, rule_store,
                                                   make_rule):
        rule_store.get_active_rules.return_value = [
            make_rule(alert_id='bad_condition', condition='value =< 1'),
            make_rule(alert_id='fetch_fails', metric_id='flaky.metric'),
            make_rule(alert_id='ok'),
        ]

        def serve(metric_ids, cancel_event=None):
            if metric_ids[0] == 'flaky.metric':
                raise ConnectivityError('timeout after retries')
            return build_latest(metric_ids[0], 0.001)
        healthy_metrics_client.get_latest_values.side_effect = serve

        summary = orchestrator.run_once()

        assert summary.alert_count == 1
        assert summary.rules_skipped == 2
        assert {e['alert_id'] for e in summary.errors} == {'bad_condition', 'fetch_fails'}

    def test_parallel_fan_out_matches_sequential(self, healthy_metrics_client, rule_store, make_rule):
        rules = [make_rule(alert_id=f'rule_{i}', metric_id=f'metric.{i}') for i in range(20)]
        rule_store.get_active_rules.return_value = rules
        healthy_metrics_client.get_latest_values.side_effect = serve_latest(
            {f'metric.{i}': (0.001 if i % 2 == 0 else 0.5) for i in range(20)}
        )

        repository = InMemoryAlertRepository()
        orchestrator = AlertRunOrchestrator(
            healthy_metrics_client, RuleCache(rule_store), repository, max_workers=8
        )
        summary = orchestrator.run_once()

        assert summary.rules_evaluated == 20
        assert summary.alert_count == 10
        assert {a.alert_id for a in repository.get_recent(limit=100)} == {f'rule_{i}' for i in range(0, 20, 2)}


# =============================================================================
# PERSISTENCE AND RUN CONTROL
# =============================================================================

class TestPersistenceAndRunControl:
    """Tests for PERSIST, idempotency, run lock and cancellation"""

    def test_rerun_is_idempotent(self, orchestrator, healthy_metrics_client, rule_store, repository, make_rule):
        rule_store.get_active_rules.return_value = [
            make_rule(alert_id='a'), make_rule(alert_id='b'), make_rule(alert_id='c'),
        ]
        healthy_metrics_client.get_latest_values.side_effect = serve_latest({'ratio.reserves_to_base': 0.001})

        first = orchestrator.run_once()
        before = {a.alert_id: a for a in repository.get_recent(limit=100)}
        second = orchestrator.run_once()
        after = {a.alert_id: a for a in repository.get_recent(limit=100)}

        assert (first.inserted, first.updated) == (3, 0)
        assert (second.inserted, second.updated) == (0, 3)
        assert len(after) == 3

        # Only updated_at moves on a rerun
        for alert_id, stored in after.items():
            original = before[alert_id]
            assert stored.ts == original.ts
            assert stored.level == original.level
            assert stored.message == original.message
            assert stored.payload == original.payload
            assert stored.created_at == original.created_at
            assert stored.updated_at >= original.updated_at

    def test_persistence_failure_is_fatal(self, healthy_metrics_client, rule_store, make_rule):
        rule_store.get_active_rules.return_value = [make_rule()]
        healthy_metrics_client.get_latest_values.side_effect = serve_latest({'ratio.reserves_to_base': 0.001})
        repository = Mock()
        repository.upsert_alerts.side_effect = PersistenceError('connection lost')
        orchestrator = AlertRunOrchestrator(healthy_metrics_client, RuleCache(rule_store), repository)

        with pytest.raises(PersistenceError) as exc_info:
            orchestrator.run_once()

        assert exc_info.value.stage == 'persist'
        assert orchestrator.last_run is None

    def test_last_run_updated_on_success(self, orchestrator):
        summary = orchestrator.run_once()
        assert orchestrator.last_run is summary

    def test_concurrent_run_rejected(self, orchestrator):
        orchestrator._run_lock.acquire()
        try:
            assert orchestrator.is_running is True
            with pytest.raises(RunInProgressError):
                orchestrator.run_once()
        finally:
            orchestrator._run_lock.release()

    def test_lock_released_after_failure(self, orchestrator, healthy_metrics_client):
        healthy_metrics_client.get_health.side_effect = ConnectivityError('down')
        with pytest.raises(ConnectivityError):
            orchestrator.run_once()

        healthy_metrics_client.get_health.side_effect = None
        assert orchestrator.run_once().alert_count == 0

    def test_cancelled_run_persists_nothing(self, orchestrator, healthy_metrics_client, rule_store,
                                            repository, make_rule):
        rule_store.get_active_rules.return_value = [make_rule()]
        healthy_metrics_client.get_latest_values.side_effect = serve_latest({'ratio.reserves_to_base': 0.001})
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(RunCancelledError):
            orchestrator.run_once(cancel_event=cancel)

        assert repository.get_recent() == []
        assert orchestrator.last_run is None

    def test_cancel_during_fetch(self, orchestrator, healthy_metrics_client, rule_store, repository, make_rule):
        rule_store.get_active_rules.return_value = [make_rule()]
        healthy_metrics_client.get_latest_values.side_effect = RunCancelledError('cancelled in backoff')

        with pytest.raises(RunCancelledError):
            orchestrator.run_once(cancel_event=threading.Event())
        assert repository.get_recent() == []
