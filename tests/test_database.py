"""Tests for the database module."""
import pytest
from datetime import timedelta

from alerts.errors import DuplicateOpenAlert
from models.alerts import AlertRecord, ChannelOutcome
from models.enums import AlertStatus, NotificationStatus, ChannelStatus
from conftest import T0, make_rule


def _record(alert_id, status="ACTIVE", minutes=0, rule_id="R1", device_id="PUMP_001", **kw):
    return AlertRecord(alert_id=alert_id, rule_id=rule_id, rule_name=f"Rule {rule_id}",
                       device_id=device_id, alert_level=kw.pop("alert_level", "WARNING"),
                       alert_time=T0 + timedelta(minutes=minutes), status=status, **kw)


def test_table_creation(temp_db):
    """Verify all tables exist after init."""
    tables = temp_db.conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table'"
    ).fetchall()
    names = {t["name"] for t in tables}
    assert {"alert_rules", "rule_triggers", "alert_records", "alert_notifications"} <= names


def test_ping(temp_db):
    assert temp_db.ping()
    temp_db.close()
    assert not temp_db.ping()


def test_empty_db(temp_db):
    assert temp_db.get_all_rules() == []
    assert temp_db.get_alerts() == []
    assert temp_db.get_alert("nope") is None
    assert temp_db.get_last_triggered("R1", "PUMP_001") is None


# ── Rules ────────────────────────────────────────────────

def test_save_and_get_rule(temp_db):
    rule = make_rule(conditions={"metric": "max_vibration", "operator": ">"},
                     email_recipients=["ops@example.com"], notification_methods=["EMAIL", "SMS"])
    temp_db.save_rule(rule)
    stored = temp_db.get_rule("R1")
    assert stored.to_dict() == rule.to_dict()


def test_save_rule_upserts(temp_db):
    temp_db.save_rule(make_rule())
    temp_db.save_rule(make_rule(rule_name="Renamed", priority=5))
    assert len(temp_db.get_all_rules()) == 1
    assert temp_db.get_rule("R1").priority == 5


def test_applicable_rules(temp_db):
    temp_db.save_rule(make_rule("ANY"))
    temp_db.save_rule(make_rule("P1", device_id="PUMP_001", priority=5))
    temp_db.save_rule(make_rule("P2", device_id="PUMP_002"))
    temp_db.save_rule(make_rule("OFF", is_active=False))

    assert [r.rule_id for r in temp_db.get_applicable_rules("PUMP_001")] == ["P1", "ANY"]
    assert [r.rule_id for r in temp_db.get_applicable_rules("PUMP_009")] == ["ANY"]
    assert len(temp_db.get_all_rules(active_only=True)) == 3
    assert len(temp_db.get_all_rules()) == 4


def test_deactivate_rules_except(temp_db):
    for rule_id in ("R1", "R2", "R3"):
        temp_db.save_rule(make_rule(rule_id))
    assert temp_db.deactivate_rules_except(["R2"]) == 2
    assert [r.rule_id for r in temp_db.get_all_rules(active_only=True)] == ["R2"]
    assert len(temp_db.get_all_rules()) == 3
    assert temp_db.deactivate_rules_except([]) == 1
    assert temp_db.get_all_rules(active_only=True) == []


def test_last_triggered_is_per_device(temp_db):
    temp_db.save_rule(make_rule())
    temp_db.set_last_triggered("R1", "PUMP_001", T0)
    temp_db.set_last_triggered("R1", "PUMP_002", T0 + timedelta(minutes=5))
    assert temp_db.get_last_triggered("R1", "PUMP_001") == T0
    assert temp_db.get_last_triggered("R1", "PUMP_002") == T0 + timedelta(minutes=5)
    assert temp_db.get_rule("R1").last_triggered_time == T0 + timedelta(minutes=5)


# ── Alert records ───────────────────────────────────────

def test_insert_and_get_alert(temp_db):
    rec = _record("A1", triggered_value=6.2, threshold_value=4.5, confidence_score=0.7,
                  extended_info={"details": {"metric": "max_vibration"}})
    temp_db.insert_alert(rec)
    stored = temp_db.get_alert("A1")
    assert stored.id is not None
    assert stored.alert_time == T0
    assert stored.triggered_value == 6.2
    assert stored.extended_info == {"details": {"metric": "max_vibration"}}
    assert stored.notification_status == NotificationStatus.PENDING


def test_second_open_alert_is_rejected(temp_db):
    temp_db.insert_alert(_record("A1"))
    with pytest.raises(DuplicateOpenAlert):
        temp_db.insert_alert(_record("A2", status="ACKNOWLEDGED"))
    temp_db.insert_alert(_record("A3", device_id="PUMP_002"))


def test_suppressed_and_closed_records_are_not_unique(temp_db):
    temp_db.insert_alert(_record("A1"))
    temp_db.insert_alert(_record("S1", status="SUPPRESSED", minutes=1))
    temp_db.insert_alert(_record("S2", status="SUPPRESSED", minutes=2))
    temp_db.insert_alert(_record("R1", status="RESOLVED", minutes=-60))
    assert len(temp_db.get_alerts()) == 4
    assert temp_db.find_open_alert("R1", "PUMP_001").alert_id == "A1"


def test_update_alert(temp_db):
    rec = temp_db.insert_alert(_record("A1"))
    rec.status = AlertStatus.RESOLVED
    rec.resolved_time = T0 + timedelta(minutes=30)
    rec.resolved_by = "op"
    temp_db.update_alert(rec)
    stored = temp_db.get_alert("A1")
    assert stored.status == AlertStatus.RESOLVED
    assert stored.duration_minutes() == 30
    assert temp_db.find_open_alert("R1", "PUMP_001") is None


def test_get_alerts_filters_and_order(temp_db):
    temp_db.insert_alert(_record("A1", minutes=0, status="RESOLVED"))
    temp_db.insert_alert(_record("A2", minutes=10))
    temp_db.insert_alert(_record("A3", minutes=20, device_id="PUMP_002"))

    assert [r.alert_id for r in temp_db.get_alerts()] == ["A3", "A2", "A1"]
    assert [r.alert_id for r in temp_db.get_alerts(device_id="PUMP_001")] == ["A2", "A1"]
    assert [r.alert_id for r in temp_db.get_alerts(statuses=["ACTIVE"])] == ["A3", "A2"]
    assert [r.alert_id for r in temp_db.get_alerts(since=T0 + timedelta(minutes=5),
                                                   until=T0 + timedelta(minutes=15))] == ["A2"]
    assert len(temp_db.get_alerts(limit=1)) == 1


def test_notification_status_queries(temp_db):
    temp_db.insert_alert(_record("A1"))
    temp_db.insert_alert(_record("A2", rule_id="R2"))
    temp_db.insert_alert(_record("A3", rule_id="R3"))
    temp_db.update_notification_status("A1", NotificationStatus.FAILED)
    temp_db.update_notification_status("A2", NotificationStatus.PARTIAL)
    temp_db.update_notification_status("A3", NotificationStatus.SUCCESS)
    temp_db.save_channel_outcome(ChannelOutcome(alert_id="A1", channel="EMAIL", status="FAILED",
                                                retry_count=0, last_attempt_time=T0))
    temp_db.save_channel_outcome(ChannelOutcome(alert_id="A2", channel="SMS", status="FAILED",
                                                retry_count=3, last_attempt_time=T0))
    temp_db.save_channel_outcome(ChannelOutcome(alert_id="A2", channel="EMAIL", status="SUCCESS",
                                                retry_count=0, last_attempt_time=T0))

    retryable = [NotificationStatus.FAILED, NotificationStatus.PARTIAL]
    assert [r.alert_id for r in temp_db.get_retryable_alerts(retryable, max_retries=3)] == ["A1"]
    assert {r.alert_id for r in temp_db.get_retryable_alerts(retryable, max_retries=5)} == {"A1", "A2"}
    assert temp_db.get_retryable_alerts(retryable, 3, attempted_before=T0 - timedelta(minutes=1)) == []
    assert [r.alert_id for r in temp_db.get_retryable_alerts(retryable, 3, attempted_before=T0)] == ["A1"]
    assert temp_db.count_notification_statuses() == {"FAILED": 1, "PARTIAL": 1, "SUCCESS": 1}


def test_counts(temp_db):
    temp_db.insert_alert(_record("A1", alert_level="CRITICAL"))
    temp_db.insert_alert(_record("S1", status="SUPPRESSED", minutes=1))
    temp_db.insert_alert(_record("A2", rule_id="R2", is_confirmed=True, status="ACKNOWLEDGED"))
    assert temp_db.count_alerts_by("status") == {"ACTIVE": 1, "SUPPRESSED": 1, "ACKNOWLEDGED": 1}
    assert temp_db.count_alerts_by("alert_level", statuses=["ACTIVE"]) == {"CRITICAL": 1}
    assert temp_db.count_unconfirmed() == 1


def test_count_by_rejects_unknown_column(temp_db):
    with pytest.raises(ValueError):
        temp_db.count_alerts_by("alert_content; DROP TABLE alert_records")


def test_delete_before_keeps_open_records(temp_db):
    temp_db.insert_alert(_record("OLD_OPEN", minutes=-10_000))
    temp_db.insert_alert(_record("OLD_DONE", rule_id="R2", status="RESOLVED", minutes=-10_000))
    temp_db.insert_alert(_record("NEW_DONE", rule_id="R3", status="RESOLVED"))
    temp_db.save_channel_outcome(ChannelOutcome(alert_id="OLD_DONE", channel="EMAIL", status="SUCCESS"))

    assert temp_db.delete_alerts_before(T0 - timedelta(days=1)) == 1
    assert temp_db.get_alert("OLD_DONE") is None
    assert temp_db.get_alert("OLD_OPEN") is not None
    assert temp_db.get_alert("NEW_DONE") is not None
    assert temp_db.get_channel_outcomes("OLD_DONE") == []


# ── Notification ledger ─────────────────────────────────

def test_channel_outcome_upsert(temp_db):
    temp_db.insert_alert(_record("A1"))
    outcome = ChannelOutcome(alert_id="A1", channel="EMAIL", recipients=["a@example.com"])
    outcome.record_attempt(False, "smtp down", when=T0)
    temp_db.save_channel_outcome(outcome)

    outcome.retry_count = 1
    outcome.record_attempt(True, when=T0 + timedelta(minutes=5))
    temp_db.save_channel_outcome(outcome)

    stored = temp_db.get_channel_outcomes("A1")
    assert len(stored) == 1
    assert stored[0].status == ChannelStatus.SUCCESS
    assert stored[0].attempts == 2
    assert stored[0].failures == 1
    assert stored[0].retry_count == 1
    assert stored[0].last_error is None
    assert stored[0].recipients == ["a@example.com"]
    assert stored[0].last_attempt_time == T0 + timedelta(minutes=5)


def test_channel_stats_filter_by_alert_time(temp_db):
    temp_db.insert_alert(_record("OLD", status="RESOLVED", minutes=-120))
    temp_db.insert_alert(_record("NEW"))
    for alert_id, ok in (("OLD", False), ("NEW", True)):
        o = ChannelOutcome(alert_id=alert_id, channel="SMS")
        o.record_attempt(ok)
        temp_db.save_channel_outcome(o)

    assert temp_db.get_channel_stats()["SMS"] == {"attempts": 2, "successes": 1, "failures": 1}
    assert temp_db.get_channel_stats(since=T0 - timedelta(minutes=1))["SMS"] == {
        "attempts": 1, "successes": 1, "failures": 0,
    }
