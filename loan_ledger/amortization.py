"""
Amortization Module

Pure computation of the fixed monthly installment and the full repayment
schedule for a fixed-rate, fixed-term loan. No storage, no clock, no hidden
state: identical inputs always produce identical schedules.

Rounding: every monetary output is rounded half-up to cents per row and the
running balance carries the rounded figures, so each row satisfies
``previous balance - principal portion = remaining balance``. Drift from the
per-row rounding is absorbed only by the final row, whose principal portion is
forced to the remaining balance.
"""

from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
import threading

from .errors import ValidationError
from .money import Numeric, ZERO, quantize, round_money, to_decimal


MONTHS_PER_YEAR = Decimal('12')
HUNDRED = Decimal('100')


@dataclass(frozen=True)
class ScheduleRow:
    """Single month of an amortization schedule"""
    month: int
    payment: Decimal
    principal_portion: Decimal
    interest_portion: Decimal
    remaining_balance: Decimal

    def to_dict(self) -> Dict:
        return {
            'month': self.month,
            'payment': f"{self.payment:.2f}",
            'principal_portion': f"{self.principal_portion:.2f}",
            'interest_portion': f"{self.interest_portion:.2f}",
            'remaining_balance': f"{self.remaining_balance:.2f}"
        }


def validate_terms(principal: Numeric, annual_rate_percent: Numeric,
                   term_months) -> Tuple[Decimal, Decimal, int]:
    principal = to_decimal(principal, "principal")
    if principal <= ZERO:
        raise ValidationError("principal must be greater than zero")

    rate = to_decimal(annual_rate_percent, "interest_rate")
    if rate < ZERO:
        raise ValidationError("interest_rate must not be negative")

    if isinstance(term_months, bool) or term_months is None:
        raise ValidationError("term_months must be a positive integer")
    try:
        term = int(term_months)
    except (TypeError, ValueError):
        raise ValidationError("term_months must be a positive integer")
    if term != to_decimal(term_months, "term_months") or term <= 0:
        raise ValidationError("term_months must be a positive integer")

    return principal, rate, term


def monthly_rate(annual_rate_percent: Decimal) -> Decimal:
    """Annual percentage rate to monthly fraction"""
    return annual_rate_percent / HUNDRED / MONTHS_PER_YEAR


def calculate_installment(principal: Numeric, annual_rate_percent: Numeric,
                          term_months: int, precision: int = 4) -> Decimal:
    """
    Calculate the fixed monthly installment

    Standard amortizing-loan formula ``P·r / (1 - (1+r)^-n)``; with a zero
    rate the principal is spread evenly over the term.

    Args:
        principal: Amount lent, > 0
        annual_rate_percent: Annual rate in percent, >= 0
        term_months: Number of monthly installments, > 0
        precision: Decimal places kept on the result

    Returns:
        Installment rounded half-up to ``precision`` places

    Raises:
        ValidationError: On non-positive principal or term, or negative rate
    """
    principal, rate, term = validate_terms(principal, annual_rate_percent, term_months)
    r = monthly_rate(rate)

    if r == ZERO:
        payment = principal / Decimal(term)
    else:
        payment = principal * r / (Decimal('1') - (Decimal('1') + r) ** -term)

    return quantize(payment, precision)


def build_schedule(principal: Numeric, annual_rate_percent: Numeric, term_months: int,
                   fixed_monthly_payment: Optional[Numeric] = None) -> List[ScheduleRow]:
    """
    Build the month-by-month repayment schedule

    Args:
        principal: Amount lent, > 0
        annual_rate_percent: Annual rate in percent, >= 0
        term_months: Number of rows to produce, > 0
        fixed_monthly_payment: Installment already fixed on the loan; computed
            from the terms when omitted

    Returns:
        Exactly ``term_months`` rows; the last row has a zero balance
    """
    principal, rate, term = validate_terms(principal, annual_rate_percent, term_months)
    r = monthly_rate(rate)

    if fixed_monthly_payment is None:
        payment = round_money(calculate_installment(principal, rate, term))
    else:
        payment = to_decimal(fixed_monthly_payment, "monthly_installment")
        if payment <= ZERO:
            raise ValidationError("monthly_installment must be greater than zero")
        payment = round_money(payment)

    schedule = []
    balance = round_money(principal)

    for month in range(1, term + 1):
        interest = round_money(balance * r)

        if month == term:
            principal_portion = balance
            row_payment = principal_portion + interest
            balance = ZERO
        else:
            principal_portion = payment - interest
            row_payment = payment
            balance = balance - principal_portion

        schedule.append(ScheduleRow(
            month=month,
            payment=round_money(row_payment),
            principal_portion=round_money(principal_portion),
            interest_portion=interest,
            remaining_balance=round_money(balance)
        ))

    return schedule


def total_due(monthly_installment: Decimal, term_months: int) -> Decimal:
    """Cumulative amount owed over the life of an activated loan"""
    return monthly_installment * Decimal(term_months)


class ScheduleCache:
    """
    Bounded keyed cache of computed schedules

    Entries are keyed by loan id and tagged with the loan's terms fingerprint
    ``(principal, rate, term, installment)``. A lookup whose fingerprint differs
    from the cached one is a miss and replaces the entry.
    """

    def __init__(self, max_entries: int = 256):
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, Tuple[tuple, List[ScheduleRow]]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def fingerprint(principal, annual_rate_percent, term_months, installment) -> tuple:
        return (str(principal), str(annual_rate_percent), int(term_months),
                None if installment is None else str(installment))

    def get_or_build(self, loan_id: str, principal, annual_rate_percent, term_months,
                     installment=None) -> List[ScheduleRow]:
        key = self.fingerprint(principal, annual_rate_percent, term_months, installment)
        with self._lock:
            cached = self._entries.get(loan_id)
            if cached and cached[0] == key:
                self._entries.move_to_end(loan_id)
                self.hits += 1
                return list(cached[1])

        schedule = build_schedule(principal, annual_rate_percent, term_months, installment)

        with self._lock:
            self.misses += 1
            self._entries[loan_id] = (key, schedule)
            self._entries.move_to_end(loan_id)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
        return list(schedule)

    def invalidate(self, loan_id: str) -> None:
        with self._lock:
            self._entries.pop(loan_id, None)

    def __len__(self) -> int:
        return len(self._entries)
