"""Enums for rule types, alert levels, lifecycle and notification states."""
from enum import Enum


class RuleType(str, Enum):
    THRESHOLD = "THRESHOLD"
    ANOMALY_DETECTION = "ANOMALY_DETECTION"
    PERFORMANCE_DEGRADATION = "PERFORMANCE_DEGRADATION"
    FAULT_PREDICTION = "FAULT_PREDICTION"
    HEALTH_SCORE = "HEALTH_SCORE"
    CUSTOM = "CUSTOM"


class AlertLevel(str, Enum):
    CRITICAL = "CRITICAL"
    WARNING = "WARNING"
    INFO = "INFO"

    @property
    def severity(self) -> int:
        return _LEVEL_SEVERITY[self]


_LEVEL_SEVERITY = {
    AlertLevel.CRITICAL: 3,
    AlertLevel.WARNING: 2,
    AlertLevel.INFO: 1,
}


class AlertStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"
    SUPPRESSED = "SUPPRESSED"
    FALSE_POSITIVE = "FALSE_POSITIVE"


# An alert in one of these states is "open": it represents an ongoing condition.
OPEN_STATUSES = frozenset({AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED})


class NotificationStatus(str, Enum):
    PENDING = "PENDING"
    SENDING = "SENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PARTIAL = "PARTIAL"


class ChannelStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class NotificationMethod(str, Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"
    WEBSOCKET = "WEBSOCKET"
    ALL = "ALL"


DELIVERY_METHODS = (NotificationMethod.EMAIL, NotificationMethod.SMS, NotificationMethod.WEBSOCKET)


def expand_methods(methods) -> list:
    """Expand ALL into concrete delivery methods, keeping order and dropping repeats."""
    expanded = []
    for m in methods or []:
        m = NotificationMethod(m)
        targets = DELIVERY_METHODS if m == NotificationMethod.ALL else (m,)
        for t in targets:
            if t not in expanded:
                expanded.append(t)
    return expanded
