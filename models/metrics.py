"""Dataclasses for device metric snapshots and analysis provider outcomes."""
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from models.alerts import parse_time, utcnow

RISK_LEVEL_SCORES = {"CRITICAL": 4, "HIGH": 3, "MEDIUM": 2, "LOW": 1}
SEVERITY_KEYS = ("severity", "severity_level", "severityLevel")


def as_float(value) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(f):
        return None
    return f


def anomaly_severity(anomaly) -> Optional[float]:
    if not isinstance(anomaly, dict):
        return None
    for key in SEVERITY_KEYS:
        value = as_float(anomaly.get(key))
        if value is not None:
            return value
    return None


@dataclass(frozen=True)
class MetricSnapshot:
    device_id: str
    timestamp: datetime = field(default_factory=utcnow)
    metrics: dict = field(default_factory=dict)
    extended_info: dict = field(default_factory=dict)
    analysis_id: Optional[str] = None
    source: str = "analysis"

    def __post_init__(self):
        object.__setattr__(self, "timestamp", parse_time(self.timestamp) or utcnow())

    def get(self, name: str) -> Optional[float]:
        """Numeric value of a metric, or None when absent or not a number."""
        return as_float(self.metrics.get(name))

    def has(self, name: str) -> bool:
        return self.get(name) is not None


@dataclass
class AnalysisOutcome:
    """Result the external analytics service reports for one device."""
    device_id: str = ""
    analysis_time: datetime = field(default_factory=utcnow)
    analysis_id: Optional[str] = None
    overall_health_score: Optional[float] = None
    efficiency_score: Optional[float] = None
    reliability_score: Optional[float] = None
    maintenance_score: Optional[float] = None
    performance_score: Optional[float] = None
    average_power: Optional[float] = None
    average_vibration: Optional[float] = None
    max_vibration: Optional[float] = None
    failure_probability: Optional[float] = None
    remaining_useful_life_days: Optional[float] = None
    risk_level: Optional[str] = None
    confidence_score: Optional[float] = None
    anomaly_rate: Optional[float] = None
    anomalies: list = field(default_factory=list)
    model_version: Optional[str] = None
    extra_metrics: dict = field(default_factory=dict)

    _NUMERIC = (
        "overall_health_score", "efficiency_score", "reliability_score",
        "maintenance_score", "performance_score", "average_power",
        "average_vibration", "max_vibration", "failure_probability",
        "remaining_useful_life_days", "confidence_score", "anomaly_rate",
    )

    @classmethod
    def from_dict(cls, d):
        """Parse the provider's JSON body. Unknown numeric keys go to extra_metrics."""
        known = {f: as_float(d.get(f)) for f in cls._NUMERIC}
        extra = {
            k: v for k, v in (d.get("metrics") or {}).items()
            if as_float(v) is not None
        }
        risk = d.get("risk_level")
        return cls(
            device_id=str(d.get("device_id", "")),
            analysis_time=parse_time(d.get("analysis_time")) or utcnow(),
            analysis_id=d.get("analysis_id"),
            risk_level=str(risk).upper() if risk else None,
            anomalies=list(d.get("anomalies") or []),
            model_version=d.get("model_version"),
            extra_metrics=extra,
            **known,
        )

    def to_snapshot(self) -> MetricSnapshot:
        metrics = dict(self.extra_metrics)
        mapping = {
            "health_score": self.overall_health_score,
            "efficiency_score": self.efficiency_score,
            "reliability_score": self.reliability_score,
            "maintenance_score": self.maintenance_score,
            "performance_score": self.performance_score,
            "average_power": self.average_power,
            "average_vibration": self.average_vibration,
            "max_vibration": self.max_vibration,
            "failure_probability": self.failure_probability,
            "remaining_useful_life": self.remaining_useful_life_days,
            "confidence_score": self.confidence_score,
            "anomaly_rate": self.anomaly_rate,
        }
        metrics.update({k: v for k, v in mapping.items() if v is not None})
        if self.risk_level is not None:
            metrics["risk_level"] = RISK_LEVEL_SCORES.get(self.risk_level, 0)

        severities = [s for s in map(anomaly_severity, self.anomalies) if s is not None]
        metrics["anomaly_count"] = len(self.anomalies)
        if severities:
            metrics["max_anomaly_severity"] = max(severities)

        return MetricSnapshot(
            device_id=self.device_id,
            timestamp=self.analysis_time,
            metrics=metrics,
            extended_info={
                "analysis_id": self.analysis_id,
                "model_version": self.model_version,
                "risk_level": self.risk_level,
                "anomalies": self.anomalies,
            },
            analysis_id=self.analysis_id,
        )
