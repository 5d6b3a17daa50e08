"""Alert notification channels."""
import html
import logging
from typing import Protocol, runtime_checkable

from models.enums import AlertLevel

logger = logging.getLogger("alertmon.alerts.channels")

_LEVEL_COLORS = {
    AlertLevel.CRITICAL: "#c0392b",
    AlertLevel.WARNING: "#e67e22",
    AlertLevel.INFO: "#2980b9",
}


@runtime_checkable
class AlertChannel(Protocol):
    def send(self, alert, rule=None) -> bool: ...


def _level_defaults(defaults, level):
    """Look up per-level default recipients from a config mapping keyed by level name."""
    defaults = defaults or {}
    return list(defaults.get(level.value, defaults.get(level.value.lower(), [])) or [])


class EmailChannel:
    """Email delivery through an EmailSender-like gateway with a deliver() method."""

    def __init__(self, sender, default_recipients=None):
        self.sender = sender
        self.default_recipients = default_recipients or {}

    def recipients_for(self, alert, rule=None):
        if rule is not None and rule.email_recipients:
            return list(rule.email_recipients)
        return _level_defaults(self.default_recipients, alert.alert_level)

    @staticmethod
    def build_subject(alert):
        return f"[ALERT][{alert.alert_level.value}] Device {alert.device_id} {alert.rule_name}"

    @staticmethod
    def build_html(alert):
        color = _LEVEL_COLORS.get(alert.alert_level, "#333")
        content = "<br>".join(html.escape(line) for line in (alert.alert_content or "").splitlines())
        when = alert.alert_time.strftime("%Y-%m-%d %H:%M:%S UTC") if alert.alert_time else ""
        return f"""<html><body style="font-family: -apple-system, Arial, sans-serif; color: #222;">
<h2 style="color: {color}; margin-bottom: 4px;">{html.escape(alert.alert_title)}</h2>
<table style="border-collapse: collapse; font-size: 14px;">
<tr><td style="padding: 2px 12px 2px 0;"><b>Alert ID</b></td><td>{html.escape(alert.alert_id)}</td></tr>
<tr><td style="padding: 2px 12px 2px 0;"><b>Device</b></td><td>{html.escape(alert.device_id)}</td></tr>
<tr><td style="padding: 2px 12px 2px 0;"><b>Level</b></td><td>{alert.alert_level.value}</td></tr>
<tr><td style="padding: 2px 12px 2px 0;"><b>Time</b></td><td>{when}</td></tr>
</table>
<p style="margin-top: 12px;">{content}</p>
<p style="color: #999; font-size: 12px;">Sent by alertmon. Acknowledge with: alertmon alerts ack {html.escape(alert.alert_id)}</p>
</body></html>"""

    def send(self, alert, rule=None) -> bool:
        recipients = self.recipients_for(alert, rule)
        if not recipients:
            logger.warning(f"No email recipients for alert {alert.alert_id}")
            return False
        return bool(self.sender.deliver(recipients, self.build_subject(alert), self.build_html(alert)))


class SmsChannel:
    """Short text messages through an SmsGateway-like object."""

    MAX_LENGTH = 300

    def __init__(self, gateway, default_recipients=None):
        self.gateway = gateway
        self.default_recipients = default_recipients or {}

    def recipients_for(self, alert, rule=None):
        if rule is not None and rule.sms_recipients:
            return list(rule.sms_recipients)
        return _level_defaults(self.default_recipients, alert.alert_level)

    def build_text(self, alert):
        value = f" value={alert.triggered_value:.4g}" if alert.triggered_value is not None else ""
        limit = f" limit={alert.threshold_value:.4g}" if alert.threshold_value is not None else ""
        text = f"[{alert.alert_level.value}] {alert.device_id} {alert.rule_name}:{value}{limit} ({alert.alert_id})"
        return text[: self.MAX_LENGTH]

    def send(self, alert, rule=None) -> bool:
        recipients = self.recipients_for(alert, rule)
        if not recipients:
            logger.warning(f"No SMS recipients for alert {alert.alert_id}")
            return False
        return bool(self.gateway.deliver(recipients, alert.alert_title, self.build_text(alert)))


class RealtimeChannel:
    """Pushes the alert to every realtime subscriber."""

    def __init__(self, push):
        self.push = push

    def recipients_for(self, alert, rule=None):
        return ["all-subscribers"]

    def send(self, alert, rule=None) -> bool:
        return self.push.broadcast_alert(alert)
