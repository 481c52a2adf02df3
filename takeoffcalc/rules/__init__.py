from takeoffcalc.rules.engine import MaterialsRuleEngine, parse_rule_set, rule_fingerprint
from takeoffcalc.rules.expression import evaluate

__all__ = ["MaterialsRuleEngine", "evaluate", "parse_rule_set", "rule_fingerprint"]
