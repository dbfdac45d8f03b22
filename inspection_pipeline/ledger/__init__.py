"""Report entitlements and the usage ledger."""

from .entitlements import (
    EntitlementCode,
    EntitlementRequest,
    EntitlementResult,
    check_access,
    choose_deduction_source,
    compute_availability,
)
from .service import UsageLedger

__all__ = [
    "EntitlementCode",
    "EntitlementRequest",
    "EntitlementResult",
    "UsageLedger",
    "check_access",
    "choose_deduction_source",
    "compute_availability",
]
