"""Background scheduler driving rule sweeps, retries, cleanup, reports and health checks."""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import schedule

from alerts.errors import UpstreamUnavailable
from models.alerts import utcnow

logger = logging.getLogger("alertmon.scheduler")

FAILURE_ALARM_THRESHOLD = 5


class AlertScheduler:
    def __init__(self, manager, dispatcher, analysis_client, config, realtime=None, report_sink=None):
        self.manager = manager
        self.dispatcher = dispatcher
        self.analysis_client = analysis_client
        self.realtime = realtime
        self.report_sink = report_sink

        cfg = config.get("scheduler", {})
        self.device_ids = list(config.get("alerts", {}).get("device_ids", []))
        self.rule_sweep_seconds = cfg.get("rule_sweep_seconds", 60)
        self.retry_seconds = cfg.get("retry_seconds", 300)
        self.cleanup_time = cfg.get("cleanup_time", "02:00")
        self.report_time = cfg.get("report_time", "09:00")
        self.health_check_seconds = cfg.get("health_check_seconds", 1800)
        self.heartbeat_seconds = config.get("realtime", {}).get("heartbeat_seconds", 30)
        self.max_workers = cfg.get("max_workers", 4)

        self._scheduler = schedule.Scheduler()
        self._pool = self._new_pool()
        self._pool_closed = False
        self._in_flight = set()
        self._in_flight_lock = threading.Lock()
        self._failures = {}
        self._failures_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread = None

    # ── lifecycle ────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        if self._pool_closed:
            self._pool = self._new_pool()
            self._pool_closed = False
        self._register_jobs()
        self._stop.clear()
        self._thread = threading.Thread(target=self._run_loop, daemon=True, name="alertmon-scheduler")
        self._thread.start()
        logger.info(f"Scheduler started: {len(self.device_ids)} devices, rule sweep every {self.rule_sweep_seconds}s")

    def stop(self):
        self._stop.set()
        self._scheduler.clear()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        self._pool.shutdown(wait=True)
        self._pool_closed = True
        logger.info("Scheduler stopped")

    def _new_pool(self):
        return ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="alertmon-sweep")

    def _register_jobs(self):
        s = self._scheduler
        s.clear()
        s.every(self.rule_sweep_seconds).seconds.do(self._run_job, "rule_sweep", self.run_rule_sweep).tag("rule_sweep")
        s.every(self.retry_seconds).seconds.do(
            self._run_job, "notification_retry", self.trigger_notification_retry).tag("notification_retry")
        s.every().day.at(self.cleanup_time).do(self._run_job, "cleanup", self.run_cleanup).tag("cleanup")
        s.every().day.at(self.report_time).do(self._run_job, "daily_report", self.run_daily_report).tag("daily_report")
        s.every(self.health_check_seconds).seconds.do(
            self._run_job, "health_check", self.run_health_check).tag("health_check")
        if self.realtime is not None:
            s.every(self.heartbeat_seconds).seconds.do(
                self._run_job, "heartbeat", self.realtime.send_heartbeat).tag("heartbeat")

    def _run_loop(self):
        self._run_job("rule_sweep", self.run_rule_sweep)
        while not self._stop.wait(1):
            self._scheduler.run_pending()

    def _run_job(self, name, func):
        """Run one job; a failure is logged and counted but never escapes."""
        try:
            func()
            self._reset_failures(name)
        except Exception:
            self._record_failure(name, f"Job {name} failed")

    def _record_failure(self, name, message):
        with self._failures_lock:
            count = self._failures.get(name, 0) + 1
            self._failures[name] = count
        logger.exception(f"{message} ({count} consecutive)")
        if count >= FAILURE_ALARM_THRESHOLD:
            logger.critical(f"{count}+ consecutive failures of job {name}!")

    def _reset_failures(self, name):
        with self._failures_lock:
            self._failures[name] = 0

    def failure_counts(self):
        """Consecutive failures per job name and per `evaluate:<device>`."""
        with self._failures_lock:
            return dict(self._failures)

    def job_status(self):
        return {
            "running": self.running,
            "jobs": [
                {"job": sorted(job.tags)[0] if job.tags else str(job), "next_run": job.next_run}
                for job in self._scheduler.get_jobs()
            ],
            "consecutive_failures": self.failure_counts(),
        }

    # ── rule sweep ───────────────────────────────────

    def run_rule_sweep(self):
        return self._submit_devices(self.device_ids, scheduled=True)

    def trigger_alert_check(self, device_id=None, wait=False):
        """Manual sweep. With wait=True returns {device_id: [created records]}."""
        devices = [device_id] if device_id else self.device_ids
        futures = self._submit_devices(devices, scheduled=False)
        if not wait:
            return list(futures)
        return {d: f.result() for d, f in futures.items()}

    def _submit_devices(self, devices, scheduled):
        futures = {}
        for device_id in devices:
            with self._in_flight_lock:
                if device_id in self._in_flight:
                    logger.debug(f"Evaluation for {device_id} still running, skipping this tick")
                    continue
                self._in_flight.add(device_id)
            try:
                futures[device_id] = self._pool.submit(self._evaluate_device, device_id, scheduled)
            except RuntimeError:
                with self._in_flight_lock:
                    self._in_flight.discard(device_id)
                raise
        return futures

    def _evaluate_device(self, device_id, scheduled):
        """Evaluate one device. Failures are logged and counted per device, never raised."""
        name = f"evaluate:{device_id}"
        try:
            try:
                snapshot = self.analysis_client.fetch_latest_snapshot(device_id)
            except UpstreamUnavailable as e:
                logger.warning(f"Skipping {device_id}: {e}")
                return []
            if snapshot is None:
                logger.debug(f"No analysis available for {device_id}")
                return []
            created = self.manager.process_analysis_result(device_id, snapshot, scheduled=scheduled)
            self._reset_failures(name)
            return created
        except Exception:
            self._record_failure(name, f"Evaluation of {device_id} failed")
            return []
        finally:
            with self._in_flight_lock:
                self._in_flight.discard(device_id)

    # ── other jobs ───────────────────────────────────

    def trigger_notification_retry(self):
        return self.dispatcher.retry_failed_notifications()

    def run_cleanup(self):
        return self.manager.cleanup_expired()

    def run_daily_report(self, now=None):
        """Statistics for the previous UTC day, handed to the report sink."""
        now = now or utcnow()
        end = datetime(now.year, now.month, now.day, tzinfo=timezone.utc)
        start = end - timedelta(days=1)
        report = {
            "report_type": "daily",
            "period_start": start.isoformat(),
            "period_end": end.isoformat(),
            "generated_at": utcnow().isoformat(),
            "alerts": self.manager.get_statistics(since=start, until=end),
            "notifications": self.dispatcher.get_statistics(since=start),
            "open_alerts": len(self.manager.get_active_alerts()),
        }
        if self.report_sink is not None:
            self.report_sink.submit(report)
        logger.info(f"Daily report for {start.date()}: {report['alerts']['total_alerts']} alerts")
        return report

    def run_health_check(self):
        checks = {
            "database": self.manager.db.ping(),
            "analysis_provider": self.analysis_client.ping(),
        }
        channels = sorted(m.value for m in self.dispatcher.channels)
        result = {
            "healthy": all(checks.values()),
            "checks": checks,
            "channels": channels,
            "subscribers": self.realtime.connection_count if self.realtime is not None else 0,
            "checked_at": utcnow().isoformat(),
        }
        if not result["healthy"]:
            failed = ", ".join(name for name, ok in checks.items() if not ok)
            logger.warning(f"Health check failed: {failed}")
            if self.realtime is not None:
                self.realtime.broadcast_system_notification(
                    "Health check failed", f"Unhealthy components: {failed}", level="WARNING")
        else:
            logger.debug("Health check passed")
        return result
