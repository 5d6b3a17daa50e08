"""Rule evaluation engine: decides whether a rule fires for a metric snapshot."""
import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

from models.alerts import AlertRule
from models.enums import RuleType, AlertLevel
from models.metrics import MetricSnapshot, as_float

logger = logging.getLogger("alertmon.alerts.engine")

EQUALITY_TOLERANCE = 1e-4

OPERATOR_MAP = {
    ">": lambda v, t: v > t,
    ">=": lambda v, t: v >= t,
    "<": lambda v, t: v < t,
    "<=": lambda v, t: v <= t,
    "==": lambda v, t: abs(v - t) < EQUALITY_TOLERANCE,
    "!=": lambda v, t: abs(v - t) >= EQUALITY_TOLERANCE,
}
OPERATOR_ALIASES = {"gt": ">", "gte": ">=", "lt": "<", "lte": "<=", "eq": "==", "ne": "!="}

RECOMMENDATIONS = {
    RuleType.THRESHOLD: "Check the device against its operating limits and inspect recent load changes.",
    RuleType.ANOMALY_DETECTION: "Review recent fault and alarm events; inspect the device for abnormal behaviour.",
    RuleType.PERFORMANCE_DEGRADATION: "Schedule a performance inspection; check impeller wear and flow path.",
    RuleType.FAULT_PREDICTION: "Plan preventive maintenance soon; prepare spare parts for likely failure modes.",
    RuleType.HEALTH_SCORE: "Run a full health check and review maintenance history.",
    RuleType.CUSTOM: "Review the custom rule conditions and the device state.",
}


@dataclass
class EvaluationResult:
    triggered: bool = False
    message: str = ""
    severity: AlertLevel = AlertLevel.INFO
    confidence: float = 0.0
    triggered_value: Optional[float] = None
    threshold_value: Optional[float] = None
    details: dict = field(default_factory=dict)
    skipped_reason: Optional[str] = None
    recommendation: str = ""

    @classmethod
    def skipped(cls, reason):
        return cls(triggered=False, message=reason, skipped_reason=reason)

    @property
    def is_skipped(self) -> bool:
        return self.skipped_reason is not None

    def generate_alert_title(self, device_id, rule_name):
        return f"[{self.severity.value}] Device {device_id} {rule_name}"

    def generate_alert_content(self):
        lines = [self.message]
        if self.triggered_value is not None:
            lines.append(f"Current value: {self.triggered_value:.4g}")
        if self.threshold_value is not None:
            lines.append(f"Threshold: {self.threshold_value:.4g}")
        lines.append(f"Confidence: {self.confidence * 100:.1f}%")
        if self.recommendation:
            lines.append(f"Recommendation: {self.recommendation}")
        return "\n".join(lines)

    def to_extended_info(self):
        return {
            "evaluation": dict(self.details),
            "message": self.message,
            "recommendation": self.recommendation,
        }


def confidence_for(value, threshold):
    """0.5 at the boundary, rising with relative distance from the threshold."""
    distance = abs(value - threshold)
    relative = distance / abs(threshold) if threshold else distance
    return max(0.0, min(1.0, 0.5 + 0.5 * relative))


def _normalize_operator(operator):
    op = str(operator or "").strip().lower()
    return OPERATOR_ALIASES.get(op, op)


def check_clause(snapshot: MetricSnapshot, metric, operator, operand, tolerance=None) -> EvaluationResult:
    """Evaluate one `metric operator operand` comparison against a snapshot."""
    if not metric:
        return EvaluationResult.skipped("no metric configured")
    value = snapshot.get(metric)
    if value is None:
        return EvaluationResult.skipped(f"metric {metric} not present in snapshot")
    threshold = as_float(operand)
    if threshold is None:
        return EvaluationResult.skipped(f"threshold for {metric} is not numeric: {operand!r}")

    op = _normalize_operator(operator)
    if op == "deviation":
        tol = as_float(tolerance)
        if tol is None or tol < 0:
            return EvaluationResult.skipped(f"deviation on {metric} needs a non-negative tolerance")
        hit = abs(value - threshold) > tol
        confidence = confidence_for(abs(value - threshold), tol)
    else:
        func = OPERATOR_MAP.get(op)
        if func is None:
            return EvaluationResult.skipped(f"unknown operator {operator!r}")
        hit = func(value, threshold)
        confidence = confidence_for(value, threshold)

    details = {"metric": metric, "operator": op, "value": value, "threshold": threshold}
    if op == "deviation":
        details["tolerance"] = as_float(tolerance)
    return EvaluationResult(
        triggered=hit,
        message=f"{metric} = {value:.4g} {op} {threshold:.4g}",
        confidence=confidence if hit else 0.0,
        triggered_value=value,
        threshold_value=threshold,
        details=details,
    )


def check_trend(rule: AlertRule, snapshot: MetricSnapshot, metric) -> Optional[EvaluationResult]:
    """Return a non-qualifying result when the rule's trend requirement fails, else None."""
    direction = rule.conditions.get("trend")
    if not direction:
        return None
    trend_metric = rule.conditions.get("trend_metric") or f"{metric}_trend"
    slope = snapshot.get(trend_metric)
    if slope is None:
        return EvaluationResult.skipped(f"trend metric {trend_metric} not present in snapshot")
    direction = str(direction).lower()
    if direction == "increasing":
        ok = slope > 0
    elif direction == "decreasing":
        ok = slope < 0
    else:
        return EvaluationResult.skipped(f"unknown trend direction {direction!r}")
    if ok:
        return None
    return EvaluationResult(triggered=False, message=f"{trend_metric} is not {direction}")


def _threshold(rule, *fallback_keys, default=None):
    value = rule.threshold_config.get("value")
    if value is None:
        value = rule.conditions.get("threshold")
    for key in fallback_keys:
        if value is None:
            value = rule.conditions.get(key, rule.threshold_config.get(key))
    return default if value is None else value


def _single_metric(rule, snapshot, metric, operator, threshold, with_trend=False):
    result = check_clause(snapshot, metric, operator, threshold, rule.conditions.get("tolerance"))
    if result.triggered and with_trend:
        trend = check_trend(rule, snapshot, metric)
        if trend is not None:
            return trend
    return result


def evaluate_threshold(rule, snapshot):
    c = rule.conditions
    metric = c.get("metric") or c.get("metric_name")
    return _single_metric(rule, snapshot, metric, c.get("operator", ">"), _threshold(rule))


def evaluate_health_score(rule, snapshot):
    c = rule.conditions
    threshold = _threshold(rule, "health_score_threshold", default=60)
    return _single_metric(rule, snapshot, c.get("metric", "health_score"), c.get("operator", "<"), threshold)


def evaluate_anomaly(rule, snapshot):
    c = rule.conditions
    threshold = _threshold(rule, "anomaly_rate_threshold", default=20)
    return _single_metric(rule, snapshot, c.get("metric", "anomaly_rate"), c.get("operator", ">"),
                          threshold, with_trend=True)


def evaluate_performance(rule, snapshot):
    c = rule.conditions
    degradation = as_float(c.get("degradation_threshold", rule.threshold_config.get("degradation_threshold", 20)))
    if degradation is None:
        return EvaluationResult.skipped("degradation_threshold is not numeric")
    return _single_metric(rule, snapshot, c.get("metric", "performance_score"), "<",
                          100 - degradation, with_trend=True)


def evaluate_fault_prediction(rule, snapshot):
    c = rule.conditions
    threshold = _threshold(rule, "failure_probability_threshold", default=0.7)
    return _single_metric(rule, snapshot, c.get("metric", "failure_probability"), c.get("operator", ">="),
                          threshold, with_trend=True)


def evaluate_custom(rule, snapshot):
    c = rule.conditions
    clauses = c.get("all") if "all" in c else [c]
    if not isinstance(clauses, list) or not clauses:
        return EvaluationResult.skipped("custom rule has no clauses")

    results = []
    for clause in clauses:
        if not isinstance(clause, dict):
            return EvaluationResult.skipped(f"malformed clause {clause!r}")
        operand = clause.get("operand", clause.get("threshold"))
        r = check_clause(snapshot, clause.get("metric"), clause.get("operator"), operand, clause.get("tolerance"))
        if r.is_skipped or not r.triggered:
            return r
        results.append(r)

    first = results[0]
    return EvaluationResult(
        triggered=True,
        message=" AND ".join(r.message for r in results),
        confidence=min(r.confidence for r in results),
        triggered_value=first.triggered_value,
        threshold_value=first.threshold_value,
        details={"clauses": [r.details for r in results]},
    )


EVALUATORS: dict = {
    RuleType.THRESHOLD: evaluate_threshold,
    RuleType.HEALTH_SCORE: evaluate_health_score,
    RuleType.ANOMALY_DETECTION: evaluate_anomaly,
    RuleType.PERFORMANCE_DEGRADATION: evaluate_performance,
    RuleType.FAULT_PREDICTION: evaluate_fault_prediction,
    RuleType.CUSTOM: evaluate_custom,
}


def register_evaluator(rule_type, func: Callable[[AlertRule, MetricSnapshot], EvaluationResult]):
    EVALUATORS[RuleType(rule_type)] = func


class RuleEngine:
    """Evaluates rules and tracks consecutive qualifying evaluations per (rule, device)."""

    def __init__(self, evaluators=None):
        self.evaluators = evaluators if evaluators is not None else EVALUATORS
        self._streaks = {}
        self._lock = threading.Lock()

    def check(self, rule: AlertRule, snapshot: MetricSnapshot) -> EvaluationResult:
        """Evaluate the rule's condition alone, without touching streak counters."""
        if not rule.matches_device(snapshot.device_id):
            return EvaluationResult.skipped(f"rule {rule.rule_id} does not apply to {snapshot.device_id}")
        evaluator = self.evaluators.get(rule.rule_type)
        if evaluator is None:
            return EvaluationResult.skipped(f"no evaluator for rule type {rule.rule_type.value}")
        try:
            result = evaluator(rule, snapshot)
        except Exception as e:
            logger.exception(f"Rule {rule.rule_id} evaluation failed for {snapshot.device_id}")
            return EvaluationResult.skipped(f"evaluation error: {e}")
        result.severity = rule.alert_level
        if result.triggered:
            result.recommendation = rule.conditions.get("recommendation") or RECOMMENDATIONS.get(rule.rule_type, "")
        return result

    def evaluate(self, rule: AlertRule, snapshot: MetricSnapshot) -> EvaluationResult:
        """Evaluate and apply the consecutive-trigger requirement.

        A firing resets the streak, so the next firing needs a fresh run of
        qualifying evaluations.
        """
        result = self.check(rule, snapshot)
        key = (rule.rule_id, snapshot.device_id)
        needed = max(1, rule.consecutive_trigger_count)

        with self._lock:
            if not result.triggered:
                self._streaks.pop(key, None)
                if result.is_skipped:
                    logger.debug(f"Rule {rule.rule_id} skipped for {snapshot.device_id}: {result.skipped_reason}")
                return result
            count = self._streaks.get(key, 0) + 1
            if count < needed:
                self._streaks[key] = count
            else:
                self._streaks.pop(key, None)

        details = dict(result.details, consecutive=count, required=needed)
        if count < needed:
            logger.debug(f"Rule {rule.rule_id} qualifying for {snapshot.device_id} ({count}/{needed})")
            return replace(result, triggered=False, details=details,
                           message=f"{result.message} (qualifying {count}/{needed})")
        return replace(result, details=details)

    def streak(self, rule_id, device_id) -> int:
        with self._lock:
            return self._streaks.get((rule_id, device_id), 0)

    def reset(self, rule_id=None, device_id=None):
        with self._lock:
            for key in list(self._streaks):
                if (rule_id is None or key[0] == rule_id) and (device_id is None or key[1] == device_id):
                    del self._streaks[key]

    def test_rules(self, rules, snapshot: MetricSnapshot):
        """Dry-run every rule against a snapshot; streak counters are untouched."""
        rows = []
        for rule in rules:
            result = self.check(rule, snapshot)
            rows.append({
                "rule_id": rule.rule_id,
                "name": rule.rule_name,
                "type": rule.rule_type.value,
                "level": rule.alert_level.value,
                "would_fire": result.triggered,
                "value": result.triggered_value,
                "threshold": result.threshold_value,
                "confidence": result.confidence,
                "message": result.message,
                "skipped": result.skipped_reason,
                "active": rule.is_active,
                "consecutive_required": rule.consecutive_trigger_count,
            })
        return rows
