"""
PayGuard - Flag Explanation Templates

Deterministic, human-readable reasons for detector findings.
The same context always produces the same text, so a flag's reason is
reproducible from its metadata alone.
"""

from decimal import Decimal
from typing import Any, Dict, List, Union

from payguard.models.flag import FlagType

FUZZY_FIELD = "name_fuzzy"

Number = Union[int, float, Decimal]


def _naira(amount: Number) -> str:
    return f"NGN {Decimal(str(amount)):,.2f}"


def _short(identity_hash: str, length: int = 16) -> str:
    return f"{identity_hash[:length]}..."


def ghost_reason(identity_hash: str, amount: Number) -> str:
    return (
        f"Ghost worker alert: identity {_short(identity_hash)} is not in the staff registry. "
        f"This person may not exist or was never registered. Amount: {_naira(amount)}."
    )


def missing_registry_reason(identity_hash: str, ledger_tx_count: int) -> str:
    return (
        f"Unverified staff: identity {_short(identity_hash)} is registered but has no confirmed "
        f"ledger proof ({ledger_tx_count} ledger transactions). "
        f"Verify on chain before releasing payment."
    )


def duplicate_reason(field: str, sibling_hashes: List[str]) -> str:
    siblings = ", ".join(h[:8] for h in sibling_hashes)
    return (
        f"Duplicate {field.upper()}: this {field.upper()} is also registered to "
        f"{len(sibling_hashes)} other staff member(s) ({siblings}). "
        f"Possible identity fraud or data entry error."
    )


def fuzzy_duplicate_reason(similarity: float, matched_with: str, name: str, matched_name: str) -> str:
    return (
        f"Potential duplicate: name similarity {similarity * 100:.1f}% with identity "
        f"{_short(matched_with)} (\"{name}\" vs \"{matched_name}\"). "
        f"Confirm whether these are the same person."
    )


def _percent(value: float) -> str:
    # a nonzero deviation never displays as 0.0%
    if 0 < value < 0.1:
        return "<0.1%"
    return f"{value:.1f}%"


def salary_anomaly_reason(
    amount: Number,
    grade: str,
    expected_min: Number,
    expected_max: Number,
    deviation_percent: float,
) -> str:
    direction = "below" if Decimal(str(amount)) < Decimal(str(expected_min)) else "above"
    return (
        f"Salary anomaly: {_naira(amount)} is {direction} the range for {grade} "
        f"({_naira(expected_min)} - {_naira(expected_max)}), deviation {_percent(deviation_percent)}."
    )


def build_reason(flag_type: FlagType, context: Dict[str, Any]) -> str:
    """Template reason for a flag from its detection context."""
    if flag_type == FlagType.GHOST:
        return ghost_reason(context["identity_hash"], context["amount"])
    if flag_type == FlagType.MISSING_REGISTRY:
        return missing_registry_reason(context["identity_hash"], context.get("ledger_tx_count", 0))
    if flag_type == FlagType.DUPLICATE:
        if context.get("duplicate_field") == FUZZY_FIELD:
            return fuzzy_duplicate_reason(
                context["similarity"],
                context["matched_identity_hash"],
                context["name"],
                context["matched_name"],
            )
        return duplicate_reason(context["duplicate_field"], context["sibling_hashes"])
    if flag_type == FlagType.SALARY_ANOMALY:
        return salary_anomaly_reason(
            context["amount"],
            context["grade"],
            context["expected_min"],
            context["expected_max"],
            context["deviation_percent"],
        )
    return "Anomaly detected. Please review this record."


def batch_summary_text(
    period_month: int,
    period_year: int,
    record_count: int,
    total_amount: Number,
    flagged_count: int,
    counts: Dict[str, int],
) -> str:
    """Template summary of a processed batch."""
    return (
        f"Payroll batch for {period_month:02d}/{period_year} processed: {record_count} staff, "
        f"{_naira(total_amount)} total. {flagged_count} records flagged "
        f"({counts.get(FlagType.GHOST.value, 0)} ghost workers, "
        f"{counts.get(FlagType.MISSING_REGISTRY.value, 0)} unverified, "
        f"{counts.get(FlagType.DUPLICATE.value, 0)} duplicates, "
        f"{counts.get(FlagType.SALARY_ANOMALY.value, 0)} salary anomalies)."
    )
