"""
Error taxonomy for the alerts engine

Per-rule errors (ValidationError, DataUnavailable, and fetch failures during
evaluation) are caught by the orchestrator and skip the rule. Everything
raised out of run_once() is fatal to the run and carries the stage it failed in.
"""
from typing import Optional


class AlertsEngineError(Exception):
    """Base class for all alerts engine errors"""

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def __str__(self) -> str:
        if self.stage:
            return f"[{self.stage}] {self.message}"
        return self.message


class ValidationError(AlertsEngineError):
    """Malformed condition grammar or non-numeric threshold/value"""


class DataUnavailable(AlertsEngineError):
    """Metric id missing from the source or its series is empty"""


class ConnectivityError(AlertsEngineError):
    """Metrics source unreachable or timing out after retries"""


class MetricsSourceError(AlertsEngineError):
    """Metrics source answered with a non-retryable error"""

    def __init__(self, message: str, status_code: Optional[int] = None, stage: Optional[str] = None):
        super().__init__(message, stage=stage)
        self.status_code = status_code


class ConfigurationError(AlertsEngineError):
    """Rule set or settings failed to load or parse"""


class PersistenceError(AlertsEngineError):
    """Alert store upsert failed"""


class RunInProgressError(AlertsEngineError):
    """Another run holds the orchestrator lock"""


class RunCancelledError(AlertsEngineError):
    """Run aborted by a cancellation signal before persistence"""
