"""
Reading validation against the previous balance.

Prepaid meters only count down between purchases, so a plain reading that is
higher than the balance before it cannot be right: the user most likely
bought a token and should record a top-up. The check is pure and cheap
enough to run on every keystroke as well as once more at submit time.
"""

import math
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from .exceptions import InvalidValue, MonotonicityViolation
from meter_ledger.storage.models import EventType

KWH_PRECISION = 4


class ValidationStatus(Enum):
    """Outcome of validating a candidate balance."""
    VALID = "valid"
    READING_INCREASED = "reading_increased"
    INVALID_VALUE = "invalid_value"


@dataclass(frozen=True)
class ValidationResult:
    """Result of :func:`validate`.

    `delta` and `prior_balance` are set for READING_INCREASED so the caller
    can explain the block; `consumption` is set for a valid reading that has
    a predecessor.
    """
    status: ValidationStatus
    message: str = ""
    delta: Optional[float] = None
    prior_balance: Optional[float] = None
    consumption: Optional[float] = None
    suggestion: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.status == ValidationStatus.VALID

    @property
    def is_blocking(self) -> bool:
        return self.status != ValidationStatus.VALID

    def raise_for_status(self, candidate: Any = None) -> None:
        """Raise the matching domain error for a blocking result."""
        if self.status == ValidationStatus.INVALID_VALUE:
            raise InvalidValue(self.message, candidate)
        if self.status == ValidationStatus.READING_INCREASED:
            raise MonotonicityViolation(self.prior_balance + self.delta, self.prior_balance)


def is_valid_kwh(value: Any) -> bool:
    """True for a finite, non-negative number (booleans excluded)."""
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        return False
    return math.isfinite(float(value)) and value >= 0


def validate(
    candidate_balance: Any,
    prior_balance: Optional[float],
    event_type: EventType
) -> ValidationResult:
    """Classify a candidate balance against the previous one.

    Rules, in order:
    1. Candidate must be a finite number >= 0, otherwise INVALID_VALUE
    2. No prior balance (None or 0) means a first entry: VALID
    3. Top-ups may raise the balance by any amount: VALID
    4. A reading higher than the prior balance: READING_INCREASED (blocking)
    5. Otherwise VALID, with the consumption since the prior balance

    Args:
        candidate_balance: Balance shown on the meter for the new event
        prior_balance: Balance of the event right before it, if any
        event_type: READING or TOPUP

    Returns:
        ValidationResult; never raises for bad input
    """
    if not is_valid_kwh(candidate_balance):
        return ValidationResult(
            status=ValidationStatus.INVALID_VALUE,
            message=f"Balance must be a non-negative number, got {candidate_balance!r}",
        )

    candidate = float(candidate_balance)

    if prior_balance is None or prior_balance == 0:
        return ValidationResult(status=ValidationStatus.VALID)

    prior = float(prior_balance)

    if event_type == EventType.TOPUP:
        return ValidationResult(status=ValidationStatus.VALID, prior_balance=prior)

    if candidate > prior:
        delta = round(candidate - prior, KWH_PRECISION)
        return ValidationResult(
            status=ValidationStatus.READING_INCREASED,
            message=(
                f"Reading {candidate:.2f} kWh is higher than the previous balance "
                f"{prior:.2f} kWh (+{delta:.2f} kWh)"
            ),
            delta=delta,
            prior_balance=prior,
            suggestion="If you bought a token, record this entry as a top-up",
        )

    return ValidationResult(
        status=ValidationStatus.VALID,
        prior_balance=prior,
        consumption=round(prior - candidate, KWH_PRECISION),
    )
