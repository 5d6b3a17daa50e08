"""Tests for the rule engine: operators, rule types, confidence and streaks."""
import pytest

from alerts.engine import (
    RuleEngine, EvaluationResult, EVALUATORS, check_clause, confidence_for, register_evaluator,
)
from models.enums import RuleType, AlertLevel
from conftest import make_rule, make_snapshot


@pytest.fixture
def engine():
    return RuleEngine()


# ── Operators ───────────────────────────────────────────

@pytest.mark.parametrize("op,threshold,value,expected", [
    (">", 4.5, 5.0, True), ("gt", 4.5, 4.5, False),
    (">=", 4.5, 4.5, True), ("gte", 4.5, 4.4, False),
    ("<", 60, 59.9, True), ("lt", 60, 60, False),
    ("<=", 60, 60, True), ("lte", 60, 61, False),
    ("==", 1.0, 1.00005, True), ("eq", 1.0, 1.001, False),
    ("!=", 1.0, 1.001, True), ("ne", 1.0, 1.00005, False),
])
def test_operators(op, threshold, value, expected):
    snap = make_snapshot(x=value)
    result = check_clause(snap, "x", op, threshold)
    assert result.skipped_reason is None
    assert result.triggered is expected


def test_deviation_operator():
    snap = make_snapshot(average_power=70)
    assert check_clause(snap, "average_power", "deviation", 55, tolerance=10).triggered
    assert not check_clause(make_snapshot(average_power=60), "average_power", "deviation", 55, tolerance=10).triggered


def test_deviation_without_tolerance_is_skipped():
    result = check_clause(make_snapshot(average_power=70), "average_power", "deviation", 55)
    assert result.triggered is False
    assert "tolerance" in result.skipped_reason


def test_unknown_operator_is_skipped():
    result = check_clause(make_snapshot(x=1), "x", "between", 0)
    assert result.triggered is False
    assert "unknown operator" in result.skipped_reason


def test_missing_metric_is_skipped():
    result = check_clause(make_snapshot(y=1), "x", ">", 0)
    assert result.triggered is False
    assert result.is_skipped


def test_non_numeric_metric_is_treated_as_missing():
    result = check_clause(make_snapshot(x="n/a"), "x", ">", 0)
    assert result.is_skipped


# ── Confidence ──────────────────────────────────────────

def test_confidence_at_boundary_is_half():
    assert confidence_for(60, 60) == pytest.approx(0.5)


def test_confidence_grows_with_distance_and_clamps():
    assert confidence_for(45, 60) == pytest.approx(0.625)
    assert confidence_for(1000, 60) == 1.0


def test_confidence_zero_threshold_uses_absolute_distance():
    assert confidence_for(0.2, 0) == pytest.approx(0.6)


# ── Rule types ──────────────────────────────────────────

def test_threshold_rule(engine):
    rule = make_rule(threshold_config={"value": 4.5})
    result = engine.evaluate(rule, make_snapshot(max_vibration=6.0))
    assert result.triggered
    assert result.triggered_value == 6.0
    assert result.threshold_value == 4.5
    assert result.severity == AlertLevel.WARNING


def test_health_score_default_threshold(engine):
    rule = make_rule(rule_type="HEALTH_SCORE", conditions={}, threshold_config={})
    assert engine.check(rule, make_snapshot(health_score=55)).triggered
    assert not engine.check(rule, make_snapshot(health_score=65)).triggered


def test_health_score_threshold_from_conditions(engine):
    rule = make_rule(rule_type="HEALTH_SCORE", conditions={"health_score_threshold": 50}, threshold_config={})
    assert not engine.check(rule, make_snapshot(health_score=55)).triggered
    assert engine.check(rule, make_snapshot(health_score=45)).triggered


def test_performance_degradation(engine):
    rule = make_rule(rule_type="PERFORMANCE_DEGRADATION", conditions={"degradation_threshold": 20},
                     threshold_config={})
    result = engine.check(rule, make_snapshot(performance_score=75))
    assert result.triggered
    assert result.threshold_value == 80
    assert not engine.check(rule, make_snapshot(performance_score=85)).triggered


def test_fault_prediction_default(engine):
    rule = make_rule(rule_type="FAULT_PREDICTION", conditions={}, threshold_config={})
    assert engine.check(rule, make_snapshot(failure_probability=0.7)).triggered
    assert not engine.check(rule, make_snapshot(failure_probability=0.69)).triggered


def test_anomaly_with_trend(engine):
    rule = make_rule(rule_type="ANOMALY_DETECTION", conditions={"trend": "increasing"},
                     threshold_config={"value": 20})
    assert engine.check(rule, make_snapshot(anomaly_rate=25, anomaly_rate_trend=1.5)).triggered
    assert not engine.check(rule, make_snapshot(anomaly_rate=25, anomaly_rate_trend=-0.5)).triggered


def test_trend_metric_missing_is_skipped(engine):
    rule = make_rule(rule_type="ANOMALY_DETECTION", conditions={"trend": "increasing"}, threshold_config={})
    result = engine.check(rule, make_snapshot(anomaly_rate=25))
    assert not result.triggered
    assert "trend" in result.skipped_reason


def test_custom_all_clauses(engine):
    rule = make_rule(rule_type="CUSTOM", threshold_config={}, conditions={"all": [
        {"metric": "average_power", "operator": "deviation", "operand": 55, "tolerance": 10},
        {"metric": "efficiency_score", "operator": "lt", "operand": 80},
    ]})
    hit = engine.check(rule, make_snapshot(average_power=70, efficiency_score=70))
    assert hit.triggered
    assert len(hit.details["clauses"]) == 2
    assert not engine.check(rule, make_snapshot(average_power=70, efficiency_score=90)).triggered


def test_custom_confidence_is_minimum_of_clauses(engine):
    rule = make_rule(rule_type="CUSTOM", threshold_config={}, conditions={"all": [
        {"metric": "a", "operator": ">", "operand": 10},
        {"metric": "b", "operator": ">", "operand": 10},
    ]})
    result = engine.check(rule, make_snapshot(a=20, b=11))
    assert result.confidence == pytest.approx(confidence_for(11, 10))


def test_custom_single_clause(engine):
    rule = make_rule(rule_type="CUSTOM", threshold_config={},
                     conditions={"metric": "risk_level", "operator": ">=", "operand": 3})
    assert engine.check(rule, make_snapshot(risk_level=4)).triggered


def test_rule_for_other_device_is_skipped(engine):
    rule = make_rule(device_id="PUMP_002")
    result = engine.check(rule, make_snapshot(device_id="PUMP_001", max_vibration=9))
    assert not result.triggered
    assert result.is_skipped


def test_evaluator_exception_is_contained(engine):
    def boom(rule, snapshot):
        raise RuntimeError("bad evaluator")

    local = RuleEngine(evaluators={RuleType.THRESHOLD: boom})
    result = local.check(make_rule(), make_snapshot(max_vibration=9))
    assert not result.triggered
    assert "bad evaluator" in result.skipped_reason


def test_register_evaluator():
    original = EVALUATORS[RuleType.CUSTOM]
    try:
        register_evaluator("CUSTOM", lambda rule, snap: EvaluationResult(triggered=True, message="always"))
        result = RuleEngine().check(make_rule(rule_type="CUSTOM"), make_snapshot())
        assert result.triggered
        assert result.message == "always"
    finally:
        EVALUATORS[RuleType.CUSTOM] = original


# ── Consecutive trigger counting ────────────────────────

def test_consecutive_count_required(engine):
    rule = make_rule(consecutive_trigger_count=3)
    results = [engine.evaluate(rule, make_snapshot(minutes=i, max_vibration=6)).triggered for i in range(3)]
    assert results == [False, False, True]


def test_streak_resets_on_non_qualifying(engine):
    rule = make_rule(consecutive_trigger_count=2)
    assert not engine.evaluate(rule, make_snapshot(max_vibration=6)).triggered
    assert not engine.evaluate(rule, make_snapshot(max_vibration=1)).triggered
    assert engine.streak("R1", "PUMP_001") == 0
    assert not engine.evaluate(rule, make_snapshot(max_vibration=6)).triggered
    assert engine.evaluate(rule, make_snapshot(max_vibration=6)).triggered


def test_streak_resets_on_skip(engine):
    rule = make_rule(consecutive_trigger_count=2)
    engine.evaluate(rule, make_snapshot(max_vibration=6))
    engine.evaluate(rule, make_snapshot(other=1))
    assert engine.streak("R1", "PUMP_001") == 0


def test_streak_resets_after_firing(engine):
    rule = make_rule(consecutive_trigger_count=2)
    engine.evaluate(rule, make_snapshot(max_vibration=6))
    assert engine.evaluate(rule, make_snapshot(max_vibration=6)).triggered
    assert engine.streak("R1", "PUMP_001") == 0
    assert not engine.evaluate(rule, make_snapshot(max_vibration=6)).triggered


def test_streaks_are_per_device(engine):
    rule = make_rule(consecutive_trigger_count=2)
    engine.evaluate(rule, make_snapshot(device_id="PUMP_001", max_vibration=6))
    assert not engine.evaluate(rule, make_snapshot(device_id="PUMP_002", max_vibration=6)).triggered
    assert engine.evaluate(rule, make_snapshot(device_id="PUMP_001", max_vibration=6)).triggered


def test_check_does_not_touch_streaks(engine):
    rule = make_rule(consecutive_trigger_count=2)
    engine.check(rule, make_snapshot(max_vibration=6))
    assert engine.streak("R1", "PUMP_001") == 0


def test_reset_by_rule(engine):
    rule = make_rule(consecutive_trigger_count=3)
    engine.evaluate(rule, make_snapshot(max_vibration=6))
    engine.reset(rule_id="R1")
    assert engine.streak("R1", "PUMP_001") == 0


# ── Output formatting ───────────────────────────────────

def test_alert_title_and_content(engine):
    rule = make_rule(rule_name="Vibration high", alert_level="CRITICAL")
    result = engine.evaluate(rule, make_snapshot(max_vibration=9))
    assert result.generate_alert_title("PUMP_001", rule.rule_name) == "[CRITICAL] Device PUMP_001 Vibration high"
    content = result.generate_alert_content()
    assert "Current value: 9" in content
    assert "Threshold: 4.5" in content
    assert "Confidence:" in content
    assert "Recommendation:" in content


def test_test_rules_table(engine):
    rules = [make_rule("A"), make_rule("B", threshold_config={"value": 100})]
    rows = engine.test_rules(rules, make_snapshot(max_vibration=6))
    assert [r["would_fire"] for r in rows] == [True, False]
    assert rows[0]["value"] == 6
