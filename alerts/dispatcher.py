"""Concurrent multi-channel alert notification with a per-channel delivery ledger."""
import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import timedelta

from models.alerts import ChannelOutcome, utcnow
from models.enums import NotificationMethod, NotificationStatus, expand_methods
from utils.locks import KeyedLock

logger = logging.getLogger("alertmon.alerts.dispatcher")

RETRYABLE_STATUSES = (NotificationStatus.FAILED, NotificationStatus.PARTIAL)


def aggregate_status(outcomes):
    outcomes = list(outcomes)
    if not outcomes:
        return NotificationStatus.SUCCESS
    ok = sum(1 for o in outcomes if o.succeeded)
    if ok == len(outcomes):
        return NotificationStatus.SUCCESS
    if ok == 0:
        return NotificationStatus.FAILED
    return NotificationStatus.PARTIAL


class NotificationDispatcher:
    def __init__(self, db, channels=None, config=None):
        cfg = (config or {}).get("notifications", {})
        self.db = db
        self.channel_timeout = cfg.get("channel_timeout", 30)
        self.max_retries = cfg.get("max_retries", 3)
        self.retry_interval = timedelta(seconds=cfg.get("retry_interval_seconds", 0))
        self.channels = {}
        for method, channel in (channels or {}).items():
            self.register_channel(method, channel)
        self._pool = ThreadPoolExecutor(max_workers=cfg.get("max_workers", 8),
                                        thread_name_prefix="alertmon-notify")
        self._record_locks = KeyedLock()

    def register_channel(self, method, channel):
        method = NotificationMethod(method)
        if method == NotificationMethod.ALL:
            raise ValueError("Register channels per concrete method, not ALL")
        self.channels[method] = channel
        logger.debug(f"Registered {method.value} channel {type(channel).__name__}")

    def send(self, record, rule=None):
        """Deliver an alert over every method its rule names; returns the aggregate status."""
        with self._record_locks.hold(record.alert_id):
            if rule is None:
                rule = self.db.get_rule(record.rule_id)
                if rule is None:
                    logger.warning(f"Rule {record.rule_id} for alert {record.alert_id} no longer exists")
            methods = expand_methods(rule.notification_methods) if rule else []
            if not methods:
                return self._set_status(record, NotificationStatus.SUCCESS)

            self._set_status(record, NotificationStatus.SENDING)
            outcomes = [
                ChannelOutcome(alert_id=record.alert_id, channel=m,
                               recipients=self._recipients(m, record, rule))
                for m in methods
            ]
            self._deliver(record, rule, outcomes)
            status = aggregate_status(outcomes)
            self._set_status(record, status)

        logger.info(f"Notification for {record.alert_id}: {status.value} "
                    f"({sum(o.succeeded for o in outcomes)}/{len(outcomes)} channels)")
        return status

    def _recipients(self, method, record, rule):
        channel = self.channels.get(method)
        if channel is None or not hasattr(channel, "recipients_for"):
            return []
        try:
            return list(channel.recipients_for(record, rule))
        except Exception as e:
            logger.warning(f"Could not resolve {method.value} recipients for {record.alert_id}: {e}")
            return []

    def _set_status(self, record, status):
        self.db.update_notification_status(record.alert_id, status)
        record.notification_status = status
        return status

    def _deliver(self, record, rule, outcomes):
        """Attempt every outcome's channel concurrently and persist each outcome."""
        futures = {}
        for outcome in outcomes:
            channel = self.channels.get(outcome.channel)
            if channel is None:
                outcome.record_attempt(False, f"no {outcome.channel.value} channel registered")
                continue
            futures[outcome.channel] = self._pool.submit(channel.send, record, rule)

        deadline = time.monotonic() + self.channel_timeout
        for outcome in outcomes:
            future = futures.get(outcome.channel)
            if future is None:
                continue
            try:
                ok = future.result(timeout=max(0.0, deadline - time.monotonic()))
                outcome.record_attempt(bool(ok), None if ok else "channel reported failure")
            except FutureTimeout:
                outcome.record_attempt(False, f"timed out after {self.channel_timeout}s")
            except Exception as e:
                outcome.record_attempt(False, f"{type(e).__name__}: {e}")

        for outcome in outcomes:
            if not outcome.succeeded:
                logger.warning(f"{outcome.channel.value} delivery failed for {record.alert_id}: {outcome.last_error}")
            self.db.save_channel_outcome(outcome)

    def retry_failed_notifications(self, now=None):
        """Re-attempt failed channels of FAILED/PARTIAL alerts, up to max_retries each.

        A channel is due once retry_interval has passed since its last attempt.
        Records whose failed channels are all exhausted are not loaded again.
        """
        due_before = (now or utcnow()) - self.retry_interval
        records = self.db.get_retryable_alerts(RETRYABLE_STATUSES, self.max_retries, attempted_before=due_before)
        retried = attempted = recovered = 0

        for record in records:
            with self._record_locks.hold(record.alert_id):
                current = self.db.get_alert(record.alert_id)
                if current is None or current.notification_status not in RETRYABLE_STATUSES:
                    continue
                outcomes = self.db.get_channel_outcomes(record.alert_id)
                pending = [o for o in outcomes if self._is_due(o, due_before)]
                if not pending:
                    continue
                rule = self.db.get_rule(record.rule_id)
                for o in pending:
                    o.retry_count += 1
                self._deliver(current, rule, pending)
                status = self._set_status(current, aggregate_status(outcomes))
                if status != NotificationStatus.SUCCESS and not any(self._is_due(o, None) for o in outcomes):
                    logger.warning(f"Notification retries exhausted for {record.alert_id}")

            retried += 1
            attempted += len(pending)
            recovered += sum(1 for o in pending if o.succeeded)

        if retried:
            logger.info(f"Notification retry: {retried} alerts, {attempted} channels, {recovered} recovered")
        return {"records": retried, "attempted": attempted, "recovered": recovered}

    def _is_due(self, outcome, due_before):
        if outcome.succeeded or outcome.retry_count >= self.max_retries:
            return False
        return due_before is None or outcome.last_attempt_time is None or outcome.last_attempt_time <= due_before

    def get_statistics(self, since=None):
        return {
            "channels": self.db.get_channel_stats(since),
            "status_counts": self.db.count_notification_statuses(since),
        }

    def close(self):
        self._pool.shutdown(wait=True)
