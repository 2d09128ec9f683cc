"""
PayGuard - Salary Grade Ranges

Static monthly salary bands (NGN) per civil-service grade level.
These are policy inputs, not computed values: the salary-range detector
only compares against them. Grades missing from this table are exempt
from salary screening.
"""

from decimal import Decimal
from typing import Dict, Mapping, NamedTuple, Optional


class SalaryRange(NamedTuple):
    """Inclusive [minimum, maximum] monthly salary for a grade."""
    minimum: Decimal
    maximum: Decimal

    def contains(self, amount: Decimal) -> bool:
        return self.minimum <= amount <= self.maximum


def _band(minimum: int, maximum: int) -> SalaryRange:
    return SalaryRange(Decimal(minimum), Decimal(maximum))


# ===========================================
# NIGERIAN CIVIL SERVICE GRADE LEVELS
# ===========================================

SALARY_RANGES: Dict[str, SalaryRange] = {
    "Grade Level 1": _band(30_000, 50_000),
    "Grade Level 2": _band(40_000, 60_000),
    "Grade Level 3": _band(50_000, 70_000),
    "Grade Level 4": _band(60_000, 80_000),
    "Grade Level 5": _band(70_000, 100_000),
    "Grade Level 6": _band(90_000, 130_000),
    "Grade Level 7": _band(120_000, 170_000),
    "Grade Level 8": _band(150_000, 220_000),
    "Grade Level 9": _band(200_000, 280_000),
    "Grade Level 10": _band(250_000, 350_000),
    "Grade Level 11": _band(300_000, 420_000),
    "Grade Level 12": _band(350_000, 500_000),
    "Grade Level 13": _band(400_000, 600_000),
    "Grade Level 14": _band(500_000, 750_000),
    "Grade Level 15": _band(600_000, 900_000),
    "Grade Level 16": _band(700_000, 1_100_000),
    "Grade Level 17": _band(800_000, 1_300_000),
}


def get_salary_range(
    grade: Optional[str],
    ranges: Optional[Mapping[str, SalaryRange]] = None,
) -> Optional[SalaryRange]:
    """Range for a grade, or None when the grade is not configured."""
    if not grade:
        return None
    table = SALARY_RANGES if ranges is None else ranges
    return table.get(grade.strip())
