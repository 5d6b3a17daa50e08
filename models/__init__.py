"""Data models."""
from models.enums import (
    RuleType, AlertLevel, AlertStatus, NotificationStatus, NotificationMethod,
    ChannelStatus, OPEN_STATUSES, expand_methods,
)
from models.alerts import AlertRule, AlertRecord, ChannelOutcome, generate_alert_id
from models.metrics import MetricSnapshot, AnalysisOutcome
