"""Points ledger services."""

from .ledger import HistoryPage, LedgerResult, PointsLedger, PointsStats  # noqa: F401
from .rules import DEFAULT_ACTION_RULES, ActionRule, ActionRuleBook, load_action_rules  # noqa: F401
