"""
Pydantic models for the Alerts Engine
Defines rules, metric data, evaluation results, alerts and run summaries
"""
import json
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class AlertLevel(str, Enum):
    """Severity of an alert, fixed by rule configuration"""
    RED = "red"
    AMBER = "amber"
    GREEN = "green"


class RuleType(str, Enum):
    """How a rule's condition is interpreted"""
    THRESHOLD = "threshold"
    BAND = "band"
    THRESHOLD_WITH_TREND = "threshold_with_trend"


class TrendRule(str, Enum):
    """Secondary trend requirement for threshold_with_trend rules"""
    NON_DECREASING = "non_decreasing"
    AT_LEAST_4_OF_5_INCREASING = "at_least_4_of_5_increasing"


class EvaluationReason(str, Enum):
    """Why an evaluation did or did not trigger"""
    THRESHOLD_MET = "threshold_met"
    THRESHOLD_NOT_MET = "threshold_not_met"
    WITHIN_BAND = "within_band"
    OUTSIDE_BAND = "outside_band"
    INSUFFICIENT_POINTS = "insufficient_points"
    TREND_NON_DECREASING = "trend_non_decreasing"
    TREND_NOT_NON_DECREASING = "trend_not_non_decreasing"
    TREND_SUFFICIENT_INCREASES = "trend_sufficient_increases"
    TREND_INSUFFICIENT_INCREASES = "trend_insufficient_increases"
    THRESHOLD_AND_TREND_MET = "threshold_and_trend_met"


class TrendConfig(BaseModel):
    """Trend requirement layered on top of a threshold"""
    window_points: int = Field(..., gt=0, alias="windowPoints")
    rule: TrendRule

    class Config:
        frozen = True
        populate_by_name = True


class Rule(BaseModel):
    """
    Alert rule definition

    Read-only to the engine. camelCase aliases are accepted so rule files
    written for the metrics dashboard load unchanged.
    """
    alert_id: str = Field(..., min_length=1, alias="alertId")
    metric_id: str = Field(..., min_length=1, alias="metricId")
    level: AlertLevel
    type: RuleType = RuleType.THRESHOLD
    condition: str = Field(..., min_length=1)
    message: str
    threshold: Optional[float] = None
    units: Optional[str] = None
    window: Optional[str] = None
    inputs: List[str] = Field(default_factory=list)
    notes: Optional[str] = None
    trend: Optional[TrendConfig] = None
    active: bool = True

    class Config:
        frozen = True
        populate_by_name = True

    @field_validator('inputs', mode='before')
    @classmethod
    def normalize_inputs(cls, value: Any) -> Any:
        """Accept JSON-array strings and bare strings left over from older rule rows"""
        if value is None:
            return []
        if not isinstance(value, str):
            return value

        text = value.strip()
        if not text:
            return []
        if text.startswith('['):
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                return [str(item) for item in parsed]
        if text.startswith('{') and text.endswith('}'):
            return [part for part in text[1:-1].replace(' ', '').split(',') if part]
        return [text]

    @model_validator(mode='after')
    def check_trend(self) -> 'Rule':
        if self.type == RuleType.THRESHOLD_WITH_TREND and self.trend is None:
            raise ValueError(f"rule {self.alert_id}: threshold_with_trend requires a trend config")
        return self

    @property
    def needs_series(self) -> bool:
        """Whether evaluation reads a series rather than the latest summary value"""
        if self.type == RuleType.THRESHOLD_WITH_TREND and self.trend is not None:
            return True
        return bool(self.window)


class MetricPoint(BaseModel):
    """Single observation of a metric"""
    ts: str
    value: float
    oficial_fx_source: Optional[str] = None

    class Config:
        extra = "ignore"


class MetricSeries(BaseModel):
    """Ascending-by-time series returned by the metrics source"""
    metric_id: str
    points: List[MetricPoint] = Field(default_factory=list)
    count: int = 0

    @property
    def latest(self) -> Optional[MetricPoint]:
        return self.points[-1] if self.points else None

    @property
    def values(self) -> List[float]:
        return [point.value for point in self.points]


class MetricSummary(BaseModel):
    """Latest value of one metric"""
    metric_id: str
    ts: str
    value: float
    oficial_fx_source: Optional[str] = None

    class Config:
        extra = "ignore"


class LatestValues(BaseModel):
    """Latest values response: found items plus ids the source does not know"""
    items: List[MetricSummary] = Field(default_factory=list)
    missing: List[str] = Field(default_factory=list)

    def find(self, metric_id: str) -> Optional[MetricSummary]:
        for item in self.items:
            if item.metric_id == metric_id:
                return item
        return None


class MetricsHealth(BaseModel):
    """Health report of the metrics source"""
    status: str
    timestamp: Optional[str] = None
    timezone: Optional[str] = None
    databases: Optional[Dict[str, bool]] = None
    last_metric_ts: Optional[str] = Field(None, alias="lastMetricTs")

    class Config:
        extra = "allow"
        populate_by_name = True

    @property
    def is_healthy(self) -> bool:
        return self.status == "healthy"


class EnrichedPayload(BaseModel):
    """UI-ready context attached to an evaluation and persisted with an alert"""
    value: float
    value_pct: float
    threshold: Optional[float] = None
    units: str = "ratio"
    window: Optional[str] = None
    inputs: Optional[List[str]] = None
    base_ts: Optional[str] = None
    oficial_fx_source: Optional[str] = None
    notes: Optional[str] = None

    class Config:
        extra = "allow"

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class EvaluationResult(BaseModel):
    """Outcome of evaluating one rule against one value"""
    triggered: bool
    value: float
    threshold_repr: str
    level: AlertLevel
    reason: EvaluationReason
    payload: Optional[EnrichedPayload] = None


class Alert(BaseModel):
    """
    Triggered alert

    (alert_id, ts) is the dedup key; ts is the metric's observation date,
    not the time the run happened.
    """
    alert_id: str = Field(..., min_length=1)
    ts: date
    level: AlertLevel
    message: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def dedup_key(self) -> tuple:
        return (self.alert_id, self.ts)

    def to_db_dict(self) -> dict:
        """Convert to dict for database storage"""
        data = self.model_dump(exclude={'created_at', 'updated_at'})
        data['level'] = self.level.value
        return data


class UpsertResult(BaseModel):
    """Counts from a deduplicated batch upsert"""
    inserted: int = 0
    updated: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.updated


class RunSummary(BaseModel):
    """Result of one successful alert run"""
    run_id: str
    ran_at: datetime
    alert_count: int = 0
    alerts_by_level: Dict[str, int] = Field(default_factory=dict)
    inserted: int = 0
    updated: int = 0
    rules_evaluated: int = 0
    rules_triggered: int = 0
    rules_skipped: int = 0
    errors: List[Dict[str, str]] = Field(default_factory=list)
    duration_seconds: float = 0.0
