"""
Billing classes and the numbering / due-date policy of each class.
"""
import enum
import re
from dataclasses import dataclass
from typing import Optional

from ..config import settings


class BillingClass(str, enum.Enum):
    standard = "standard"
    retainer = "retainer"


@dataclass(frozen=True)
class BillingPolicy:
    billing_class: BillingClass
    number_prefix: str  # literal text placed before the year
    number_width: int
    due_days: int

    def prefix_for_year(self, year: int) -> str:
        return f"{self.number_prefix}{year}"

    def shape_for_year(self, year: int) -> "re.Pattern":
        # Overflowing the width keeps the sequence valid (2026999 -> 20261000)
        return re.compile(rf"^{re.escape(self.prefix_for_year(year))}(\d{{{self.number_width},}})$")

    def format_number(self, year: int, sequence: int) -> str:
        return f"{self.prefix_for_year(year)}{sequence:0{self.number_width}d}"


def policy_table() -> dict:
    """Policies keyed by billing class, built from the current settings."""
    return {
        BillingClass.standard: BillingPolicy(
            billing_class=BillingClass.standard,
            number_prefix="",
            number_width=settings.invoice_number_width,
            due_days=settings.standard_due_days,
        ),
        BillingClass.retainer: BillingPolicy(
            billing_class=BillingClass.retainer,
            number_prefix=settings.retainer_number_prefix,
            number_width=settings.invoice_number_width,
            due_days=settings.retainer_due_days,
        ),
    }


def get_policy(billing_class: "BillingClass | str") -> BillingPolicy:
    return policy_table()[resolve_billing_class(billing_class)]


def resolve_billing_class(value: Optional["BillingClass | str"]) -> BillingClass:
    """Map a stored billing class value to the enum; unknown or empty values fall back to standard."""
    if isinstance(value, BillingClass):
        return value
    try:
        return BillingClass((value or "").strip().lower())
    except ValueError:
        return BillingClass.standard


def foreign_prefixes(billing_class: BillingClass) -> list:
    """Literal prefixes of the other classes; their numbers never belong to *billing_class*'s sequence."""
    return [
        p.number_prefix
        for c, p in policy_table().items()
        if c != billing_class and p.number_prefix
    ]
