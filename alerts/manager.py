"""Alert orchestration: evaluation, deduplication, persistence and lifecycle."""
import logging
import threading
from dataclasses import replace
from datetime import timedelta
from typing import Optional

from alerts.engine import RuleEngine
from alerts.errors import NotFoundError, InvalidTransitionError, DuplicateOpenAlert
from models.alerts import AlertRecord, generate_alert_id, utcnow, to_utc
from models.enums import AlertStatus, AlertLevel, NotificationStatus, OPEN_STATUSES
from models.metrics import MetricSnapshot
from utils.locks import KeyedLock

logger = logging.getLogger("alertmon.alerts.manager")

TRANSITIONS = {
    AlertStatus.ACTIVE: {AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED, AlertStatus.FALSE_POSITIVE},
    AlertStatus.ACKNOWLEDGED: {AlertStatus.RESOLVED, AlertStatus.FALSE_POSITIVE},
}


class AlertManager:
    def __init__(self, db, engine=None, dispatcher=None, realtime=None, config=None):
        self.db = db
        self.engine = engine or RuleEngine()
        self.dispatcher = dispatcher
        self.realtime = realtime
        alerts_cfg = (config or {}).get("alerts", {})
        self.retention_days = alerts_cfg.get("retention_days", 90)
        self.count_suppressed_in_totals = alerts_cfg.get("count_suppressed_in_totals", False)
        self._key_locks = KeyedLock()
        self._last_checked = {}
        self._checked_lock = threading.Lock()

    # ── Rule sync ────────────────────────────────────────

    def sync_rules(self, rules):
        """Persist rule definitions, keeping any stored last_triggered_time.

        Stored rules missing from `rules` are deactivated, not deleted, since
        alert records may still reference them.
        """
        for rule in rules:
            rule.validate()
        for rule in rules:
            stored = self.db.get_rule(rule.rule_id)
            if stored and rule.last_triggered_time is None:
                rule.last_triggered_time = stored.last_triggered_time
            self.db.save_rule(rule)
        retired = self.db.deactivate_rules_except(r.rule_id for r in rules)
        if retired:
            logger.info(f"Deactivated {retired} alert rules no longer configured")
        logger.info(f"Synced {len(rules)} alert rules")
        return len(rules)

    # ── Evaluation ───────────────────────────────────────

    def process_analysis_result(self, device_id, outcome, scheduled=False):
        """Evaluate every applicable rule for a device and return the records created.

        SUPPRESSED records are included in the result; dropped firings are not.
        """
        snapshot = outcome if isinstance(outcome, MetricSnapshot) else outcome.to_snapshot()
        if snapshot.device_id != device_id:
            snapshot = replace(snapshot, device_id=device_id)

        created = []
        for rule in self.db.get_applicable_rules(device_id):
            try:
                if scheduled and not self._is_due(rule, device_id, snapshot.timestamp):
                    continue
                result = self.engine.evaluate(rule, snapshot)
                if not result.triggered:
                    logger.debug(f"Rule {rule.rule_id} did not fire for {device_id}: {result.message}")
                    continue
                record, dispatch = self._record_firing(rule, snapshot, result)
                if record is None:
                    continue
                created.append(record)
                if dispatch:
                    self._dispatch(record, rule)
            except Exception:
                logger.exception(f"Rule {rule.rule_id} failed for device {device_id}")
        return created

    def _is_due(self, rule, device_id, now):
        key = (rule.rule_id, device_id)
        with self._checked_lock:
            last = self._last_checked.get(key)
            if last is not None and now - last < timedelta(minutes=rule.check_interval_minutes):
                return False
            self._last_checked[key] = now
        return True

    def _build_record(self, rule, snapshot, result, status):
        extended = result.to_extended_info()
        extended["snapshot"] = dict(snapshot.extended_info)
        return AlertRecord(
            alert_id=generate_alert_id(rule.rule_id, snapshot.device_id, snapshot.timestamp),
            rule_id=rule.rule_id,
            rule_name=rule.rule_name,
            device_id=snapshot.device_id,
            alert_level=rule.alert_level,
            alert_title=result.generate_alert_title(snapshot.device_id, rule.rule_name),
            alert_content=result.generate_alert_content(),
            triggered_value=result.triggered_value,
            threshold_value=result.threshold_value,
            confidence_score=result.confidence,
            alert_time=snapshot.timestamp,
            status=status,
            notification_status=NotificationStatus.PENDING,
            extended_info=extended,
            analysis_id=snapshot.analysis_id,
            alert_source=snapshot.source,
        )

    def _record_firing(self, rule, snapshot, result):
        """Apply suppression and open-alert dedup under the (rule, device) lock.

        Returns (record, should_dispatch); record is None when the firing is dropped.
        """
        device_id = snapshot.device_id
        now = snapshot.timestamp
        with self._key_locks.hold((rule.rule_id, device_id)):
            last = self.db.get_last_triggered(rule.rule_id, device_id)
            window = timedelta(minutes=rule.suppression_minutes)
            if last is not None and rule.suppression_minutes > 0 and now - last < window:
                record = self._build_record(rule, snapshot, result, AlertStatus.SUPPRESSED)
                record.extended_info["suppressed_until"] = (last + window).isoformat()
                self.db.insert_alert(record)
                logger.info(f"Suppressed {rule.rule_id} for {device_id} (last fired {last.isoformat()})")
                return record, False

            if self.db.find_open_alert(rule.rule_id, device_id) is not None:
                logger.debug(f"Open alert already exists for {rule.rule_id}/{device_id}, dropping firing")
                return None, False

            record = self._build_record(rule, snapshot, result, AlertStatus.ACTIVE)
            try:
                self.db.insert_alert(record)
            except DuplicateOpenAlert:
                logger.debug(f"Concurrent open alert for {rule.rule_id}/{device_id}, dropping firing")
                return None, False
            self.db.set_last_triggered(rule.rule_id, device_id, now)
        logger.info(f"Alert {record.alert_id} created: {record.alert_title}")
        return record, True

    def _dispatch(self, record, rule):
        if self.dispatcher is None:
            return
        try:
            self.dispatcher.send(record, rule)
        except Exception:
            logger.exception(f"Dispatch failed for alert {record.alert_id}")

    # ── Queries ──────────────────────────────────────────

    def get_active_alerts(self, device_id=None):
        return self.db.get_alerts(device_id=device_id, statuses=sorted(OPEN_STATUSES))

    def get_alert(self, alert_id):
        record = self.db.get_alert(alert_id)
        if record is None:
            raise NotFoundError(f"Alert {alert_id} not found")
        return record

    def get_alerts(self, device_id=None, status=None, since=None, limit=100):
        statuses = [AlertStatus(status)] if status else None
        return self.db.get_alerts(device_id=device_id, statuses=statuses, since=since, limit=limit)

    # ── Lifecycle ────────────────────────────────────────

    def acknowledge(self, alert_id, confirmed_by, note=None):
        return self._transition(alert_id, AlertStatus.ACKNOWLEDGED, confirmed_by, note)

    def resolve(self, alert_id, resolved_by, note=None):
        return self._transition(alert_id, AlertStatus.RESOLVED, resolved_by, note)

    def mark_false_positive(self, alert_id, marked_by, note=None):
        return self._transition(alert_id, AlertStatus.FALSE_POSITIVE, marked_by, note)

    def _transition(self, alert_id, target, actor, note):
        record = self.get_alert(alert_id)
        with self._key_locks.hold((record.rule_id, record.device_id)):
            record = self.get_alert(alert_id)
            if target not in TRANSITIONS.get(record.status, ()):
                raise InvalidTransitionError(alert_id, record.status, target)
            now = utcnow()
            if target == AlertStatus.ACKNOWLEDGED:
                record.is_confirmed = True
                record.confirmed_time = now
                record.confirmed_by = actor
                record.confirmation_note = note
            else:
                record.resolved_time = now
                record.resolved_by = actor
                record.resolution_note = note
            record.status = target
            self.db.update_alert(record)
        logger.info(f"Alert {alert_id} -> {target.value} by {actor}")
        self._broadcast_status(record, actor)
        return record

    def _broadcast_status(self, record, actor):
        if self.realtime is None:
            return
        try:
            self.realtime.broadcast_status_update(record.alert_id, record.status, actor)
        except Exception as e:
            logger.warning(f"Status broadcast failed for {record.alert_id}: {e}")

    # ── Statistics & retention ───────────────────────────

    def get_statistics(self, device_id=None, since=None, until=None):
        status_counts = self.db.count_alerts_by("status", device_id=device_id, since=since, until=until)
        level_rows = self.db.count_alerts_by("alert_level", device_id=device_id, since=since, until=until)
        suppressed = status_counts.get(AlertStatus.SUPPRESSED.value, 0)

        if not self.count_suppressed_in_totals and suppressed:
            unsuppressed = [s.value for s in AlertStatus if s != AlertStatus.SUPPRESSED]
            level_rows = self.db.count_alerts_by("alert_level", device_id=device_id,
                                                 statuses=unsuppressed, since=since, until=until)
        total = sum(status_counts.values())
        if not self.count_suppressed_in_totals:
            total -= suppressed

        return {
            "total_alerts": total,
            "status_counts": {s.value: status_counts.get(s.value, 0) for s in AlertStatus},
            "level_counts": {lvl.value: level_rows.get(lvl.value, 0) for lvl in AlertLevel},
            "unconfirmed_count": self.db.count_unconfirmed(device_id=device_id, since=since, until=until),
            "active_count": sum(status_counts.get(s.value, 0) for s in OPEN_STATUSES),
            "suppressed_count": suppressed,
            "since": to_utc(since).isoformat() if since else None,
            "until": to_utc(until).isoformat() if until else None,
        }

    def cleanup_expired(self, retention_days: Optional[int] = None, now=None):
        days = retention_days if retention_days is not None else self.retention_days
        cutoff = (to_utc(now) or utcnow()) - timedelta(days=days)
        deleted = self.db.delete_alerts_before(cutoff)
        logger.info(f"Retention cleanup removed {deleted} alert records older than {days} days")
        return deleted
