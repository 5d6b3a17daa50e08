"""Dataclasses for alert rules, alert records and per-channel delivery outcomes."""
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from models.enums import (
    RuleType, AlertLevel, AlertStatus, NotificationStatus, NotificationMethod,
    ChannelStatus, OPEN_STATUSES,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_time(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return to_utc(datetime.fromisoformat(text))


def generate_alert_id(rule_id: str = "", device_id: str = "", when: Optional[datetime] = None) -> str:
    """ALERT_<epoch millis>_<8 hex chars>, unique even for identical timestamps.

    rule_id and device_id are accepted for call-site clarity; the random
    suffix alone guarantees uniqueness.
    """
    when = to_utc(when) or utcnow()
    return f"ALERT_{int(when.timestamp() * 1000)}_{uuid.uuid4().hex[:8]}"


@dataclass
class AlertRule:
    rule_id: str = ""
    rule_name: str = ""
    description: str = ""
    device_id: Optional[str] = None  # None matches every device
    rule_type: RuleType = RuleType.THRESHOLD
    alert_level: AlertLevel = AlertLevel.WARNING
    conditions: dict = field(default_factory=dict)
    threshold_config: dict = field(default_factory=dict)
    check_interval_minutes: int = 5
    consecutive_trigger_count: int = 1
    suppression_minutes: int = 30
    is_active: bool = True
    notification_methods: list = field(default_factory=lambda: [NotificationMethod.WEBSOCKET])
    email_recipients: list = field(default_factory=list)
    sms_recipients: list = field(default_factory=list)
    priority: int = 1
    last_triggered_time: Optional[datetime] = None
    created_by: str = "system"

    def __post_init__(self):
        self.rule_type = RuleType(self.rule_type)
        self.alert_level = AlertLevel(self.alert_level)
        self.notification_methods = [NotificationMethod(m) for m in self.notification_methods or []]
        self.last_triggered_time = parse_time(self.last_triggered_time)
        if not self.rule_name:
            self.rule_name = self.rule_id

    def validate(self):
        """Raise ValueError describing every broken invariant."""
        problems = []
        if not self.rule_id:
            problems.append("rule_id is required")
        if self.check_interval_minutes < 1:
            problems.append("check_interval_minutes must be >= 1")
        if self.consecutive_trigger_count < 1:
            problems.append("consecutive_trigger_count must be >= 1")
        if self.suppression_minutes < 0:
            problems.append("suppression_minutes must be >= 0")
        if not 1 <= self.priority <= 10:
            problems.append("priority must be between 1 and 10")
        if not isinstance(self.conditions, dict) or not isinstance(self.threshold_config, dict):
            problems.append("conditions and threshold_config must be mappings")
        if problems:
            raise ValueError(f"Rule {self.rule_id or '<unnamed>'}: " + "; ".join(problems))

    def matches_device(self, device_id: str) -> bool:
        return self.device_id is None or self.device_id == device_id

    def to_dict(self):
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "description": self.description,
            "device_id": self.device_id,
            "rule_type": self.rule_type.value,
            "alert_level": self.alert_level.value,
            "conditions": dict(self.conditions),
            "threshold_config": dict(self.threshold_config),
            "check_interval_minutes": self.check_interval_minutes,
            "consecutive_trigger_count": self.consecutive_trigger_count,
            "suppression_minutes": self.suppression_minutes,
            "is_active": self.is_active,
            "notification_methods": [m.value for m in self.notification_methods],
            "email_recipients": list(self.email_recipients),
            "sms_recipients": list(self.sms_recipients),
            "priority": self.priority,
            "last_triggered_time": self.last_triggered_time.isoformat() if self.last_triggered_time else None,
            "created_by": self.created_by,
        }

    @classmethod
    def from_dict(cls, d):
        return cls(
            rule_id=str(d["rule_id"]),
            rule_name=d.get("rule_name", ""),
            description=d.get("description", ""),
            device_id=d.get("device_id"),
            rule_type=d.get("rule_type", "THRESHOLD"),
            alert_level=d.get("alert_level", "WARNING"),
            conditions=d.get("conditions") or {},
            threshold_config=d.get("threshold_config") or {},
            check_interval_minutes=int(d.get("check_interval_minutes", 5)),
            consecutive_trigger_count=int(d.get("consecutive_trigger_count", 1)),
            suppression_minutes=int(d.get("suppression_minutes", 30)),
            is_active=bool(d.get("is_active", True)),
            notification_methods=d.get("notification_methods") or [],
            email_recipients=list(d.get("email_recipients") or []),
            sms_recipients=list(d.get("sms_recipients") or []),
            priority=int(d.get("priority", 1)),
            last_triggered_time=d.get("last_triggered_time"),
            created_by=d.get("created_by", "system"),
        )


@dataclass
class AlertRecord:
    alert_id: str = ""
    rule_id: str = ""
    rule_name: str = ""
    device_id: str = ""
    alert_level: AlertLevel = AlertLevel.INFO
    alert_title: str = ""
    alert_content: str = ""
    triggered_value: Optional[float] = None
    threshold_value: Optional[float] = None
    confidence_score: Optional[float] = None
    alert_time: datetime = field(default_factory=utcnow)
    status: AlertStatus = AlertStatus.ACTIVE
    is_confirmed: bool = False
    confirmed_time: Optional[datetime] = None
    confirmed_by: Optional[str] = None
    confirmation_note: Optional[str] = None
    resolved_time: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_note: Optional[str] = None
    notification_status: NotificationStatus = NotificationStatus.PENDING
    extended_info: dict = field(default_factory=dict)
    analysis_id: Optional[str] = None
    alert_source: str = "analysis"
    id: Optional[int] = None

    def __post_init__(self):
        self.alert_level = AlertLevel(self.alert_level)
        self.status = AlertStatus(self.status)
        self.notification_status = NotificationStatus(self.notification_status)
        self.alert_time = parse_time(self.alert_time)
        self.confirmed_time = parse_time(self.confirmed_time)
        self.resolved_time = parse_time(self.resolved_time)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def duration_minutes(self, now: Optional[datetime] = None) -> Optional[int]:
        """Minutes the alert has been (or was) open. None for suppressed records."""
        if self.alert_time is None or self.status == AlertStatus.SUPPRESSED:
            return None
        if self.is_open:
            end = to_utc(now) or utcnow()
        else:
            end = self.resolved_time or to_utc(now) or utcnow()
        return max(0, int((end - self.alert_time).total_seconds() // 60))

    def to_dict(self):
        def _iso(dt):
            return dt.isoformat() if dt else None

        return {
            "alert_id": self.alert_id,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "device_id": self.device_id,
            "alert_level": self.alert_level.value,
            "alert_title": self.alert_title,
            "alert_content": self.alert_content,
            "triggered_value": self.triggered_value,
            "threshold_value": self.threshold_value,
            "confidence_score": self.confidence_score,
            "alert_time": _iso(self.alert_time),
            "status": self.status.value,
            "is_confirmed": self.is_confirmed,
            "confirmed_time": _iso(self.confirmed_time),
            "confirmed_by": self.confirmed_by,
            "confirmation_note": self.confirmation_note,
            "resolved_time": _iso(self.resolved_time),
            "resolved_by": self.resolved_by,
            "resolution_note": self.resolution_note,
            "notification_status": self.notification_status.value,
            "extended_info": self.extended_info,
            "analysis_id": self.analysis_id,
            "alert_source": self.alert_source,
            "duration_minutes": self.duration_minutes(),
        }

    @classmethod
    def from_row(cls, row):
        d = dict(row)
        extended = d.get("extended_info")
        if isinstance(extended, str):
            extended = json.loads(extended) if extended else {}
        return cls(
            id=d.get("id"),
            alert_id=d["alert_id"],
            rule_id=d["rule_id"],
            rule_name=d.get("rule_name") or "",
            device_id=d["device_id"],
            alert_level=d["alert_level"],
            alert_title=d.get("alert_title") or "",
            alert_content=d.get("alert_content") or "",
            triggered_value=d.get("triggered_value"),
            threshold_value=d.get("threshold_value"),
            confidence_score=d.get("confidence_score"),
            alert_time=d["alert_time"],
            status=d["status"],
            is_confirmed=bool(d.get("is_confirmed")),
            confirmed_time=d.get("confirmed_time"),
            confirmed_by=d.get("confirmed_by"),
            confirmation_note=d.get("confirmation_note"),
            resolved_time=d.get("resolved_time"),
            resolved_by=d.get("resolved_by"),
            resolution_note=d.get("resolution_note"),
            notification_status=d.get("notification_status") or NotificationStatus.PENDING,
            extended_info=extended or {},
            analysis_id=d.get("analysis_id"),
            alert_source=d.get("alert_source") or "analysis",
        )


@dataclass
class ChannelOutcome:
    """Delivery ledger for one channel of one alert."""
    alert_id: str = ""
    channel: NotificationMethod = NotificationMethod.WEBSOCKET
    status: ChannelStatus = ChannelStatus.FAILED
    recipients: list = field(default_factory=list)
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    retry_count: int = 0
    last_error: Optional[str] = None
    last_attempt_time: Optional[datetime] = None

    def __post_init__(self):
        self.channel = NotificationMethod(self.channel)
        self.status = ChannelStatus(self.status)
        self.last_attempt_time = parse_time(self.last_attempt_time)

    @property
    def succeeded(self) -> bool:
        return self.status == ChannelStatus.SUCCESS

    def record_attempt(self, ok: bool, error: Optional[str] = None, when: Optional[datetime] = None):
        self.attempts += 1
        if ok:
            self.successes += 1
            self.status = ChannelStatus.SUCCESS
            self.last_error = None
        else:
            self.failures += 1
            self.status = ChannelStatus.FAILED
            self.last_error = error
        self.last_attempt_time = to_utc(when) or utcnow()
