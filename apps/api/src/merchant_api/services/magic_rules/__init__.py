"""Magic rules automation engine."""

from .actions import MagicRuleActionExecutor, multiplier_bonus, render_template
from .conditions import evaluate_condition, evaluate_conditions, hour_in_window, resolve_timezone
from .engine import ExecutionLedger, MagicRuleEngine
from .errors import MagicRuleDecodeError, MagicRuleError
from .orchestrator import MagicRuleOrchestrator, decode_rule

__all__ = [
    "ExecutionLedger",
    "MagicRuleActionExecutor",
    "MagicRuleDecodeError",
    "MagicRuleEngine",
    "MagicRuleError",
    "MagicRuleOrchestrator",
    "decode_rule",
    "evaluate_condition",
    "evaluate_conditions",
    "hour_in_window",
    "multiplier_bonus",
    "render_template",
    "resolve_timezone",
]
