"""Alert rule loading from YAML."""
import logging
import yaml
from pathlib import Path

from alerts.engine import OPERATOR_MAP, OPERATOR_ALIASES
from alerts.errors import RuleConfigError
from models.alerts import AlertRule
from models.enums import RuleType

logger = logging.getLogger("alertmon.alerts.rules")

_VALID_OPERATORS = set(OPERATOR_MAP) | set(OPERATOR_ALIASES) | {"deviation"}


class RulesManager:
    def __init__(self, rules_path="config/alert_rules.yaml"):
        self.rules_path = Path(rules_path)
        self.rules = []
        self.load()

    def load(self):
        if not self.rules_path.exists():
            logger.warning(f"Alert rules file not found: {self.rules_path}")
            self.rules = []
            return
        try:
            with open(self.rules_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuleConfigError(f"Cannot parse {self.rules_path}: {e}") from e
        if not isinstance(data, dict):
            raise RuleConfigError(f"{self.rules_path} must contain a mapping with a 'rules' list")
        self.rules = self._parse_rules(data.get("rules") or [])
        logger.info(f"Loaded {len(self.rules)} alert rules from {self.rules_path}")

    def _parse_rules(self, raw_rules):
        if not isinstance(raw_rules, list):
            raise RuleConfigError("'rules' must be a list")
        rules = []
        seen = set()
        for i, r in enumerate(raw_rules):
            if not isinstance(r, dict) or "rule_id" not in r:
                raise RuleConfigError(f"Rule #{i + 1} is missing rule_id")
            try:
                rule = AlertRule.from_dict(r)
                rule.validate()
            except (KeyError, TypeError, ValueError) as e:
                raise RuleConfigError(f"Invalid rule {r.get('rule_id')}: {e}") from e
            self._check_operators(rule)
            if rule.rule_id in seen:
                raise RuleConfigError(f"Duplicate rule_id {rule.rule_id}")
            seen.add(rule.rule_id)
            rules.append(rule)
        return rules

    @staticmethod
    def _check_operators(rule):
        c = rule.conditions
        if rule.rule_type == RuleType.CUSTOM:
            clauses = c.get("all") if "all" in c else [c]
            if not isinstance(clauses, list) or not clauses:
                raise RuleConfigError(f"Rule {rule.rule_id}: custom rule needs a clause or an 'all' list")
            for clause in clauses:
                if not isinstance(clause, dict) or not clause.get("metric"):
                    raise RuleConfigError(f"Rule {rule.rule_id}: every clause needs a metric")
                op = str(clause.get("operator", "")).lower()
                if op not in _VALID_OPERATORS:
                    raise RuleConfigError(f"Rule {rule.rule_id}: invalid operator {clause.get('operator')!r}")
            return
        if rule.rule_type == RuleType.THRESHOLD and not (c.get("metric") or c.get("metric_name")):
            raise RuleConfigError(f"Rule {rule.rule_id}: threshold rule needs conditions.metric")
        op = c.get("operator")
        if op is not None and str(op).lower() not in _VALID_OPERATORS:
            raise RuleConfigError(f"Rule {rule.rule_id}: invalid operator {op!r}")

    def get_active_rules(self):
        return [r for r in self.rules if r.is_active]

    def get_rule(self, rule_id):
        for r in self.rules:
            if r.rule_id == rule_id:
                return r
        return None

    def get_all_rules(self):
        return self.rules
