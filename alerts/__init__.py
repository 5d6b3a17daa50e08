"""Alert system module."""
from alerts.errors import (
    AlertError, NotFoundError, InvalidTransitionError, RuleConfigError,
    UpstreamUnavailable, DuplicateOpenAlert,
)
from alerts.engine import RuleEngine, EvaluationResult, register_evaluator
from alerts.rules_manager import RulesManager
from alerts.manager import AlertManager
from alerts.dispatcher import NotificationDispatcher
from alerts.channels import AlertChannel, EmailChannel, SmsChannel, RealtimeChannel
