"""SQLite persistence for alert rules, alert records and the notification ledger."""
import json
import sqlite3
import logging
import threading
from pathlib import Path

from alerts.errors import DuplicateOpenAlert
from models.alerts import AlertRule, AlertRecord, ChannelOutcome, to_utc, parse_time
from models.enums import OPEN_STATUSES

logger = logging.getLogger("alertmon.db")

_COUNTABLE_COLUMNS = {"status", "alert_level", "notification_status", "device_id", "rule_id"}


def _ts(dt):
    dt = to_utc(dt)
    return dt.isoformat(timespec="microseconds") if dt else None


def _open_values():
    return tuple(s.value for s in OPEN_STATUSES)


class Database:
    def __init__(self, db_path="data/alerts.db"):
        self.db_path = db_path
        self.conn = None
        # One connection shared by the scheduler, dispatcher and CLI threads.
        self._lock = threading.RLock()

    def connect(self):
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._create_tables()
        return self

    def close(self):
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, *args):
        self.close()

    def _create_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS alert_rules (
                rule_id TEXT PRIMARY KEY,
                rule_name TEXT NOT NULL,
                description TEXT,
                device_id TEXT,
                rule_type TEXT NOT NULL,
                alert_level TEXT NOT NULL,
                conditions TEXT NOT NULL DEFAULT '{}',
                threshold_config TEXT NOT NULL DEFAULT '{}',
                check_interval_minutes INTEGER DEFAULT 5,
                consecutive_trigger_count INTEGER DEFAULT 1,
                suppression_minutes INTEGER DEFAULT 30,
                is_active INTEGER DEFAULT 1,
                notification_methods TEXT NOT NULL DEFAULT '[]',
                email_recipients TEXT NOT NULL DEFAULT '[]',
                sms_recipients TEXT NOT NULL DEFAULT '[]',
                priority INTEGER DEFAULT 1,
                last_triggered_time TEXT,
                created_by TEXT DEFAULT 'system'
            );

            CREATE TABLE IF NOT EXISTS rule_triggers (
                rule_id TEXT NOT NULL,
                device_id TEXT NOT NULL,
                last_triggered_time TEXT NOT NULL,
                PRIMARY KEY (rule_id, device_id)
            );

            CREATE TABLE IF NOT EXISTS alert_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                alert_id TEXT NOT NULL UNIQUE,
                rule_id TEXT NOT NULL,
                rule_name TEXT,
                device_id TEXT NOT NULL,
                alert_level TEXT NOT NULL,
                alert_title TEXT,
                alert_content TEXT,
                triggered_value REAL,
                threshold_value REAL,
                confidence_score REAL,
                alert_time TEXT NOT NULL,
                status TEXT NOT NULL,
                is_confirmed INTEGER DEFAULT 0,
                confirmed_time TEXT,
                confirmed_by TEXT,
                confirmation_note TEXT,
                resolved_time TEXT,
                resolved_by TEXT,
                resolution_note TEXT,
                notification_status TEXT NOT NULL DEFAULT 'PENDING',
                extended_info TEXT,
                analysis_id TEXT,
                alert_source TEXT DEFAULT 'analysis'
            );

            CREATE INDEX IF NOT EXISTS idx_alert_records_device_time
                ON alert_records(device_id, alert_time);

            CREATE INDEX IF NOT EXISTS idx_alert_records_notification
                ON alert_records(notification_status);

            CREATE UNIQUE INDEX IF NOT EXISTS idx_alert_records_one_open
                ON alert_records(rule_id, device_id)
                WHERE status IN ('ACTIVE', 'ACKNOWLEDGED');

            CREATE TABLE IF NOT EXISTS alert_notifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                alert_id TEXT NOT NULL,
                channel TEXT NOT NULL,
                status TEXT NOT NULL,
                recipients TEXT NOT NULL DEFAULT '[]',
                attempts INTEGER DEFAULT 0,
                successes INTEGER DEFAULT 0,
                failures INTEGER DEFAULT 0,
                retry_count INTEGER DEFAULT 0,
                last_error TEXT,
                last_attempt_time TEXT,
                UNIQUE (alert_id, channel)
            );
        """)
        self.conn.commit()

    def ping(self) -> bool:
        try:
            with self._lock:
                self.conn.execute("SELECT 1").fetchone()
            return True
        except (sqlite3.Error, AttributeError) as e:
            logger.warning(f"Database ping failed: {e}")
            return False

    # --- Rules ---

    def save_rule(self, rule: AlertRule):
        d = rule.to_dict()
        with self._lock:
            self.conn.execute("""
                INSERT INTO alert_rules
                (rule_id, rule_name, description, device_id, rule_type, alert_level,
                 conditions, threshold_config, check_interval_minutes,
                 consecutive_trigger_count, suppression_minutes, is_active,
                 notification_methods, email_recipients, sms_recipients, priority,
                 last_triggered_time, created_by)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(rule_id) DO UPDATE SET
                    rule_name = excluded.rule_name,
                    description = excluded.description,
                    device_id = excluded.device_id,
                    rule_type = excluded.rule_type,
                    alert_level = excluded.alert_level,
                    conditions = excluded.conditions,
                    threshold_config = excluded.threshold_config,
                    check_interval_minutes = excluded.check_interval_minutes,
                    consecutive_trigger_count = excluded.consecutive_trigger_count,
                    suppression_minutes = excluded.suppression_minutes,
                    is_active = excluded.is_active,
                    notification_methods = excluded.notification_methods,
                    email_recipients = excluded.email_recipients,
                    sms_recipients = excluded.sms_recipients,
                    priority = excluded.priority,
                    last_triggered_time = excluded.last_triggered_time,
                    created_by = excluded.created_by
            """, (
                d["rule_id"], d["rule_name"], d["description"], d["device_id"],
                d["rule_type"], d["alert_level"], json.dumps(d["conditions"]),
                json.dumps(d["threshold_config"]), d["check_interval_minutes"],
                d["consecutive_trigger_count"], d["suppression_minutes"], int(d["is_active"]),
                json.dumps(d["notification_methods"]), json.dumps(d["email_recipients"]),
                json.dumps(d["sms_recipients"]), d["priority"],
                _ts(rule.last_triggered_time), d["created_by"],
            ))
            self.conn.commit()
        logger.debug(f"Saved rule {rule.rule_id}")

    @staticmethod
    def _row_to_rule(row):
        d = dict(row)
        for key in ("conditions", "threshold_config", "notification_methods",
                    "email_recipients", "sms_recipients"):
            d[key] = json.loads(d[key]) if d.get(key) else None
        d["is_active"] = bool(d["is_active"])
        return AlertRule.from_dict(d)

    def get_rule(self, rule_id):
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM alert_rules WHERE rule_id = ?", (rule_id,)
            ).fetchone()
        return self._row_to_rule(row) if row else None

    def get_all_rules(self, active_only=False):
        query = "SELECT * FROM alert_rules"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY priority DESC, rule_id"
        with self._lock:
            rows = self.conn.execute(query).fetchall()
        return [self._row_to_rule(r) for r in rows]

    def deactivate_rules_except(self, rule_ids):
        """Mark every active rule not in `rule_ids` inactive. Rows are kept for history."""
        keep = list(rule_ids)
        query = "UPDATE alert_rules SET is_active = 0 WHERE is_active = 1"
        if keep:
            query += f" AND rule_id NOT IN ({', '.join('?' for _ in keep)})"
        with self._lock:
            cur = self.conn.execute(query, keep)
            self.conn.commit()
        return cur.rowcount

    def get_applicable_rules(self, device_id):
        """Active rules bound to this device or to every device."""
        with self._lock:
            rows = self.conn.execute("""
                SELECT * FROM alert_rules
                WHERE is_active = 1 AND (device_id IS NULL OR device_id = ?)
                ORDER BY priority DESC, rule_id
            """, (device_id,)).fetchall()
        return [self._row_to_rule(r) for r in rows]

    def get_last_triggered(self, rule_id, device_id):
        with self._lock:
            row = self.conn.execute("""
                SELECT last_triggered_time FROM rule_triggers
                WHERE rule_id = ? AND device_id = ?
            """, (rule_id, device_id)).fetchone()
        return parse_time(row["last_triggered_time"]) if row else None

    def set_last_triggered(self, rule_id, device_id, when):
        ts = _ts(when)
        with self._lock:
            self.conn.execute("""
                INSERT INTO rule_triggers (rule_id, device_id, last_triggered_time)
                VALUES (?, ?, ?)
                ON CONFLICT(rule_id, device_id) DO UPDATE SET
                    last_triggered_time = excluded.last_triggered_time
            """, (rule_id, device_id, ts))
            self.conn.execute(
                "UPDATE alert_rules SET last_triggered_time = ? WHERE rule_id = ?",
                (ts, rule_id),
            )
            self.conn.commit()

    # --- Alert records ---

    def insert_alert(self, record: AlertRecord) -> AlertRecord:
        try:
            with self._lock:
                cur = self.conn.execute("""
                    INSERT INTO alert_records
                    (alert_id, rule_id, rule_name, device_id, alert_level, alert_title,
                     alert_content, triggered_value, threshold_value, confidence_score,
                     alert_time, status, is_confirmed, confirmed_time, confirmed_by,
                     confirmation_note, resolved_time, resolved_by, resolution_note,
                     notification_status, extended_info, analysis_id, alert_source)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    record.alert_id, record.rule_id, record.rule_name, record.device_id,
                    record.alert_level.value, record.alert_title, record.alert_content,
                    record.triggered_value, record.threshold_value, record.confidence_score,
                    _ts(record.alert_time), record.status.value, int(record.is_confirmed),
                    _ts(record.confirmed_time), record.confirmed_by, record.confirmation_note,
                    _ts(record.resolved_time), record.resolved_by, record.resolution_note,
                    record.notification_status.value,
                    json.dumps(record.extended_info, default=str),
                    record.analysis_id, record.alert_source,
                ))
                self.conn.commit()
        except sqlite3.IntegrityError as e:
            if "alert_records.rule_id" in str(e):
                raise DuplicateOpenAlert(
                    f"Open alert already exists for {record.rule_id}/{record.device_id}"
                ) from e
            raise
        record.id = cur.lastrowid
        return record

    def update_alert(self, record: AlertRecord):
        """Persist lifecycle fields of an existing record."""
        with self._lock:
            self.conn.execute("""
                UPDATE alert_records SET
                    status = ?, is_confirmed = ?, confirmed_time = ?, confirmed_by = ?,
                    confirmation_note = ?, resolved_time = ?, resolved_by = ?,
                    resolution_note = ?, notification_status = ?
                WHERE alert_id = ?
            """, (
                record.status.value, int(record.is_confirmed), _ts(record.confirmed_time),
                record.confirmed_by, record.confirmation_note, _ts(record.resolved_time),
                record.resolved_by, record.resolution_note,
                record.notification_status.value, record.alert_id,
            ))
            self.conn.commit()

    def get_alert(self, alert_id):
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM alert_records WHERE alert_id = ?", (alert_id,)
            ).fetchone()
        return AlertRecord.from_row(row) if row else None

    def find_open_alert(self, rule_id, device_id):
        with self._lock:
            row = self.conn.execute("""
                SELECT * FROM alert_records
                WHERE rule_id = ? AND device_id = ? AND status IN (?, ?)
                LIMIT 1
            """, (rule_id, device_id, *_open_values())).fetchone()
        return AlertRecord.from_row(row) if row else None

    def _filters(self, device_id=None, statuses=None, since=None, until=None, rule_id=None):
        clauses, params = [], []
        if device_id:
            clauses.append("device_id = ?")
            params.append(device_id)
        if rule_id:
            clauses.append("rule_id = ?")
            params.append(rule_id)
        if statuses:
            values = [getattr(s, "value", s) for s in statuses]
            clauses.append(f"status IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        if since:
            clauses.append("alert_time >= ?")
            params.append(_ts(since))
        if until:
            clauses.append("alert_time < ?")
            params.append(_ts(until))
        where = " WHERE " + " AND ".join(clauses) if clauses else ""
        return where, params

    def get_alerts(self, device_id=None, statuses=None, since=None, until=None,
                   rule_id=None, limit=None):
        where, params = self._filters(device_id, statuses, since, until, rule_id)
        query = f"SELECT * FROM alert_records{where} ORDER BY alert_time DESC, id DESC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [AlertRecord.from_row(r) for r in rows]

    def get_retryable_alerts(self, statuses, max_retries, attempted_before=None):
        """Alerts in `statuses` with at least one failed channel still under max_retries.

        With `attempted_before`, channels attempted after that time are not due yet.
        """
        values = [getattr(s, "value", s) for s in statuses]
        cutoff = _ts(attempted_before)
        with self._lock:
            rows = self.conn.execute(f"""
                SELECT * FROM alert_records r
                WHERE r.notification_status IN ({', '.join('?' for _ in values)})
                  AND EXISTS (
                    SELECT 1 FROM alert_notifications n
                    WHERE n.alert_id = r.alert_id
                      AND n.status = 'FAILED'
                      AND n.retry_count < ?
                      AND (? IS NULL OR n.last_attempt_time IS NULL OR n.last_attempt_time <= ?)
                  )
                ORDER BY r.alert_time ASC
            """, (*values, max_retries, cutoff, cutoff)).fetchall()
        return [AlertRecord.from_row(r) for r in rows]

    def update_notification_status(self, alert_id, status):
        with self._lock:
            self.conn.execute(
                "UPDATE alert_records SET notification_status = ? WHERE alert_id = ?",
                (getattr(status, "value", status), alert_id),
            )
            self.conn.commit()

    def count_alerts_by(self, column, device_id=None, statuses=None, since=None, until=None):
        if column not in _COUNTABLE_COLUMNS:
            raise ValueError(f"Cannot group alerts by {column!r}")
        where, params = self._filters(device_id, statuses, since, until)
        with self._lock:
            rows = self.conn.execute(f"""
                SELECT {column} AS key, COUNT(*) AS cnt
                FROM alert_records{where}
                GROUP BY {column}
            """, params).fetchall()
        return {r["key"]: r["cnt"] for r in rows}

    def count_unconfirmed(self, device_id=None, since=None, until=None):
        where, params = self._filters(device_id, None, since, until)
        where += (" AND " if where else " WHERE ") + "is_confirmed = 0 AND status = 'ACTIVE'"
        with self._lock:
            row = self.conn.execute(
                f"SELECT COUNT(*) AS cnt FROM alert_records{where}", params
            ).fetchone()
        return row["cnt"]

    def delete_alerts_before(self, cutoff):
        """Delete closed records older than cutoff and their notification rows."""
        ts = _ts(cutoff)
        with self._lock:
            self.conn.execute("""
                DELETE FROM alert_notifications WHERE alert_id IN (
                    SELECT alert_id FROM alert_records
                    WHERE alert_time < ? AND status NOT IN (?, ?)
                )
            """, (ts, *_open_values()))
            cur = self.conn.execute("""
                DELETE FROM alert_records
                WHERE alert_time < ? AND status NOT IN (?, ?)
            """, (ts, *_open_values()))
            self.conn.commit()
        return cur.rowcount

    # --- Notification ledger ---

    def save_channel_outcome(self, outcome: ChannelOutcome):
        with self._lock:
            self.conn.execute("""
                INSERT INTO alert_notifications
                (alert_id, channel, status, recipients, attempts, successes, failures,
                 retry_count, last_error, last_attempt_time)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(alert_id, channel) DO UPDATE SET
                    status = excluded.status,
                    recipients = excluded.recipients,
                    attempts = excluded.attempts,
                    successes = excluded.successes,
                    failures = excluded.failures,
                    retry_count = excluded.retry_count,
                    last_error = excluded.last_error,
                    last_attempt_time = excluded.last_attempt_time
            """, (
                outcome.alert_id, outcome.channel.value, outcome.status.value,
                json.dumps(outcome.recipients), outcome.attempts, outcome.successes,
                outcome.failures, outcome.retry_count, outcome.last_error,
                _ts(outcome.last_attempt_time),
            ))
            self.conn.commit()

    def get_channel_outcomes(self, alert_id):
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM alert_notifications WHERE alert_id = ? ORDER BY id",
                (alert_id,),
            ).fetchall()
        outcomes = []
        for r in rows:
            d = dict(r)
            d.pop("id", None)
            d["recipients"] = json.loads(d["recipients"] or "[]")
            outcomes.append(ChannelOutcome(**d))
        return outcomes

    def get_channel_stats(self, since=None):
        """Per-channel attempt totals for alerts raised at or after since."""
        query = """
            SELECT n.channel, SUM(n.attempts) AS attempts, SUM(n.successes) AS successes,
                   SUM(n.failures) AS failures
            FROM alert_notifications n
            JOIN alert_records a ON a.alert_id = n.alert_id
        """
        params = []
        if since:
            query += " WHERE a.alert_time >= ?"
            params.append(_ts(since))
        query += " GROUP BY n.channel"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return {
            r["channel"]: {
                "attempts": r["attempts"] or 0,
                "successes": r["successes"] or 0,
                "failures": r["failures"] or 0,
            }
            for r in rows
        }

    def count_notification_statuses(self, since=None):
        query = """
            SELECT notification_status AS key, COUNT(*) AS cnt FROM alert_records
            WHERE status != 'SUPPRESSED'
        """
        params = []
        if since:
            query += " AND alert_time >= ?"
            params.append(_ts(since))
        query += " GROUP BY notification_status"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return {r["key"]: r["cnt"] for r in rows}
