"""
Invoice allocation validation.

A charge is split across one or more invoices. The split must add up to the
charged amount exactly, in the currency's minor unit, before anything
touches the network.
"""

from decimal import Decimal, InvalidOperation
from typing import Iterable, Union

from gateway.engine.errors import ValidationError
from gateway.models.charge import InvoiceAllocation, minor_unit
from gateway.models.enums import FailureKind

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number) -> Decimal:
    """Convert to Decimal without going through binary floating point."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        value = str(value)
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ValidationError(f"Not a valid amount: {value!r}", kind=FailureKind.INVALID_AMOUNT) from e


def _check_amount(amount: Decimal, quantum: Decimal, label: str) -> None:
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{label} must be positive, got {amount}", kind=FailureKind.INVALID_AMOUNT)
    if amount != amount.quantize(quantum):
        raise ValidationError(
            f"{label} {amount} is finer than the currency minor unit {quantum}",
            kind=FailureKind.INVALID_AMOUNT,
        )


def validate_allocation(
    total: Number,
    allocations: Iterable[InvoiceAllocation],
    currency: str = "USD",
) -> Decimal:
    """
    Check that the allocations exactly cover the total.

    Duplicate invoice numbers are allowed (partial payments against the same
    invoice) and are not merged.

    Returns:
        The exact sum of the allocations.

    Raises:
        ValidationError: kind is empty_allocation, invalid_amount,
            invalid_invoice or amount_mismatch.
    """
    allocations = list(allocations)
    if not allocations:
        raise ValidationError("At least one invoice allocation is required", kind=FailureKind.EMPTY_ALLOCATION)

    quantum = minor_unit(currency)
    total = to_decimal(total)
    _check_amount(total, quantum, "Total amount")

    allocated = Decimal("0")
    for i, allocation in enumerate(allocations):
        if not allocation.invoice_number or not allocation.invoice_number.strip():
            raise ValidationError(f"Allocation {i} has no invoice number", kind=FailureKind.INVALID_INVOICE)
        amount = to_decimal(allocation.amount)
        _check_amount(amount, quantum, f"Allocation for invoice {allocation.invoice_number}")
        allocated += amount

    if allocated != total:
        raise ValidationError(
            f"Allocations sum to {allocated} but the charge amount is {total}",
            kind=FailureKind.AMOUNT_MISMATCH,
        )
    return allocated
