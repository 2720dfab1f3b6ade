"""Redemption checkout, lifecycle and reporting."""

from .audit import AuditAppender, AuditRecord, SqlAuditAppender  # noqa: F401
from .claim_codes import assign_claim_code, build_claim_code  # noqa: F401
from .coordinator import CheckoutRequest, CheckoutResult, RedemptionCoordinator  # noqa: F401
from .reporting import CSV_HEADER, RedemptionReporting, StationStats  # noqa: F401
from .state_machine import RedemptionStateMachine, StationInfo, TransitionResult  # noqa: F401
