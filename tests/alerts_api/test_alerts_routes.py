"""
Tests for the Alerts API (FastAPI TestClient, collaborators mocked)
"""
import pytest
from datetime import date, datetime, timezone
from unittest.mock import Mock

from fastapi.testclient import TestClient

from alerts_api.alerts_api import create_app
from alerts_core.config import AlertsConfig
from alerts_core.exceptions import (
    ConfigurationError,
    ConnectivityError,
    RunInProgressError,
)
from alerts_core.models import AlertLevel, MetricsHealth, RunSummary
from alerts_core.repository import InMemoryAlertRepository


@pytest.fixture
def orchestrator(make_rule):
    orchestrator = Mock()
    orchestrator.last_run = None
    orchestrator.repository = InMemoryAlertRepository()
    orchestrator.rule_cache.get.return_value = [make_rule()]
    orchestrator.metrics_client.get_health.return_value = MetricsHealth(
        status='healthy', lastMetricTs='2025-09-01'
    )
    return orchestrator


@pytest.fixture
def client(orchestrator, clean_env):
    app = create_app(orchestrator=orchestrator, config=AlertsConfig())
    return TestClient(app)


@pytest.fixture
def summary():
    return RunSummary(
        run_id='abc123',
        ran_at=datetime(2025, 9, 1, 11, 25, tzinfo=timezone.utc),
        alert_count=2,
        alerts_by_level={'red': 1, 'amber': 1},
        inserted=2,
        rules_evaluated=5,
        rules_triggered=2,
    )


class TestHealthRoute:
    """Tests for GET /health"""

    def test_healthy(self, client):
        response = client.get('/health')
        data = response.json()

        assert response.status_code == 200
        assert data['ok'] is True
        assert data['timezone'] == 'America/Argentina/Buenos_Aires'
        assert data['metrics_api'] == {'reachable': True, 'status': 'healthy', 'last_metric_ts': '2025-09-01'}
        assert data['last_run_at'] is None
        assert data['alerts_count_last_run'] is None

    def test_unreachable_metrics_source(self, client, orchestrator):
        orchestrator.metrics_client.get_health.side_effect = ConnectivityError('refused')

        response = client.get('/health')

        assert response.status_code == 503
        assert response.json()['metrics_api']['reachable'] is False

    def test_reports_last_run(self, client, orchestrator, summary):
        orchestrator.last_run = summary

        data = client.get('/health').json()

        assert data['last_run_at'] == '2025-09-01T11:25:00+00:00'
        assert data['alerts_count_last_run'] == 2
        assert data['alerts_by_level'] == {'red': 1, 'amber': 1}


class TestAlertsRoutes:
    """Tests for /api/v1/alerts"""

    @pytest.fixture
    def seeded(self, orchestrator, make_alert):
        orchestrator.repository.upsert_alerts([
            make_alert('a', ts=date(2025, 9, 1), level=AlertLevel.RED),
            make_alert('b', ts=date(2025, 9, 2), level=AlertLevel.AMBER),
            make_alert('c', ts=date(2025, 9, 3), level=AlertLevel.GREEN),
        ])

    def test_list_alerts(self, client, seeded):
        data = client.get('/api/v1/alerts').json()

        assert data['count'] == 3
        assert [a['alert_id'] for a in data['alerts']] == ['c', 'b', 'a']
        assert data['alerts'][0]['ts'] == '2025-09-03'
        assert data['filters'] == {'from': None, 'to': None, 'level': None, 'limit': 50}

    def test_filters(self, client, seeded):
        data = client.get('/api/v1/alerts', params={'from': '2025-09-02', 'level': 'amber'}).json()

        assert [a['alert_id'] for a in data['alerts']] == ['b']
        assert data['filters']['from'] == '2025-09-02'
        assert data['filters']['level'] == 'amber'

    def test_invalid_level(self, client):
        assert client.get('/api/v1/alerts', params={'level': 'purple'}).status_code == 422

    @pytest.mark.parametrize('limit', [0, 101])
    def test_limit_bounds(self, client, limit):
        assert client.get('/api/v1/alerts', params={'limit': limit}).status_code == 422

    def test_from_after_to(self, client):
        response = client.get('/api/v1/alerts', params={'from': '2025-09-05', 'to': '2025-09-01'})
        assert response.status_code == 422

    def test_recent(self, client, seeded):
        data = client.get('/api/v1/alerts/recent', params={'limit': 2}).json()
        assert data['count'] == 2

    def test_query_failure(self, client, orchestrator):
        orchestrator.repository = Mock()
        orchestrator.repository.query.side_effect = RuntimeError('db down')
        assert client.get('/api/v1/alerts').status_code == 500


class TestRulesRoute:
    """Tests for GET /api/v1/alerts/rules"""

    def test_list_rules(self, client):
        data = client.get('/api/v1/alerts/rules').json()
        assert data['count'] == 1
        assert data['rules'][0]['alert_id'] == 'reserves_low'

    def test_rule_load_failure(self, client, orchestrator):
        orchestrator.rule_cache.get.side_effect = ConfigurationError('bad file')
        assert client.get('/api/v1/alerts/rules').status_code == 503


class TestRunRoute:
    """Tests for POST /api/v1/alerts/run"""

    def test_run_returns_summary(self, client, orchestrator, summary):
        orchestrator.run_once.return_value = summary

        response = client.post('/api/v1/alerts/run')

        assert response.status_code == 200
        assert response.json()['run_id'] == 'abc123'
        assert response.json()['alert_count'] == 2

    def test_run_in_progress(self, client, orchestrator):
        orchestrator.run_once.side_effect = RunInProgressError('busy', stage='evaluate')

        response = client.post('/api/v1/alerts/run')

        assert response.status_code == 409
        assert response.json() == {'error': 'busy', 'stage': 'evaluate'}

    def test_fatal_error(self, client, orchestrator):
        orchestrator.run_once.side_effect = ConnectivityError('refused', stage='health_check')

        response = client.post('/api/v1/alerts/run')

        assert response.status_code == 503
        assert response.json() == {'error': 'refused', 'stage': 'health_check'}
