"""Shared test fixtures."""
import os
import sys
import threading
import pytest
import tempfile

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import datetime, timedelta, timezone
from models.database import Database
from models.alerts import AlertRule
from models.metrics import MetricSnapshot

T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    db = Database(db_path)
    db.connect()
    yield db
    db.close()
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(db_path + suffix):
            os.unlink(db_path + suffix)


def make_rule(rule_id="R1", **kwargs):
    """Threshold rule on max_vibration > 4.5 unless overridden."""
    defaults = dict(
        rule_name=f"Rule {rule_id}",
        rule_type="THRESHOLD",
        alert_level="WARNING",
        conditions={"metric": "max_vibration", "operator": ">"},
        threshold_config={"value": 4.5},
        consecutive_trigger_count=1,
        suppression_minutes=30,
        notification_methods=["WEBSOCKET"],
    )
    defaults.update(kwargs)
    return AlertRule(rule_id=rule_id, **defaults)


def make_snapshot(device_id="PUMP_001", minutes=0, **metrics):
    """Snapshot taken `minutes` after T0."""
    return MetricSnapshot(
        device_id=device_id,
        timestamp=T0 + timedelta(minutes=minutes),
        metrics=metrics,
        analysis_id=f"AN-{device_id}-{minutes}",
    )


@pytest.fixture
def rule_factory():
    return make_rule


@pytest.fixture
def snapshot_factory():
    return make_snapshot


class FakeChannel:
    """Records every send; outcome is scripted per call."""

    def __init__(self, results=True, delay=0.0, error=None):
        self.results = results
        self.delay = delay
        self.error = error
        self.sent = []
        self._lock = threading.Lock()

    def recipients_for(self, alert, rule=None):
        return ["fake@example.com"]

    def send(self, alert, rule=None):
        import time
        with self._lock:
            self.sent.append(alert.alert_id)
            n = len(self.sent)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if isinstance(self.results, list):
            return self.results[min(n - 1, len(self.results) - 1)]
        return self.results


class FakePush:
    """Stands in for RealtimePushChannel when only the calls matter."""

    def __init__(self):
        self.status_updates = []
        self.alerts = []
        self.notifications = []
        self.connection_count = 0

    def broadcast_alert(self, record):
        self.alerts.append(record.alert_id)
        return True

    def broadcast_status_update(self, alert_id, status, updated_by):
        self.status_updates.append((alert_id, getattr(status, "value", status), updated_by))
        return True

    def broadcast_system_notification(self, title, body, level="INFO"):
        self.notifications.append((title, body, level))
        return True

    def send_heartbeat(self):
        return True
