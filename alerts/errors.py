"""Exceptions raised by the alerting pipeline."""


class AlertError(Exception):
    """Base class for alerting errors."""


class NotFoundError(AlertError, LookupError):
    """Unknown alert id or rule id."""


class InvalidTransitionError(AlertError):
    def __init__(self, alert_id, current, target):
        self.alert_id = alert_id
        self.current = current
        self.target = target
        super().__init__(
            f"Alert {alert_id} cannot move from {getattr(current, 'value', current)} "
            f"to {getattr(target, 'value', target)}"
        )


class RuleConfigError(AlertError, ValueError):
    """Malformed rule file or rule definition."""


class UpstreamUnavailable(AlertError):
    """The analysis provider could not be reached."""


class DuplicateOpenAlert(AlertError):
    """An open alert already exists for this (rule_id, device_id)."""
