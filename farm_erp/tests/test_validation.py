from decimal import Decimal
from typing import Optional

import pytest
from pydantic import BaseModel, ValidationError

from farm_erp.app.validation import (
    AllocationMode,
    DocStatus,
    Money,
    PaymentDirection,
    PaymentMethod,
    PaymentPurpose,
    ReconAccountCode,
    SaleKind,
)


class _M(BaseModel):
    direction: PaymentDirection
    method: PaymentMethod
    purpose: PaymentPurpose
    mode: AllocationMode
    status: DocStatus
    account: ReconAccountCode
    kind: Optional[SaleKind] = None


def test_validation_types_normalize_case():
    m = _M(direction="in", method=" Bank ", purpose="wages", mode="manual", status="posted", account="cash", kind="credit_note")
    assert m.direction == "IN"
    assert m.method == "BANK"
    assert m.purpose == "WAGES"
    assert m.mode == "MANUAL"
    assert m.status == "POSTED"
    assert m.account == "CASH"
    assert m.kind == "CREDIT_NOTE"


def test_unknown_codes_are_rejected():
    with pytest.raises(ValidationError):
        _M(direction="sideways", method="bank", purpose="general", mode="fifo", status="draft", account="bank")
    # Only cash-like accounts can be reconciled.
    with pytest.raises(ValidationError):
        _M(direction="in", method="bank", purpose="general", mode="fifo", status="draft", account="ar")


class _Amount(BaseModel):
    amount: Money


def test_money_fits_the_amount_column():
    assert _Amount(amount="999999999999.99").amount == Decimal("999999999999.99")
    assert _Amount(amount=-5).amount == Decimal("-5")
    for bad in ("NaN", "inf", "-Infinity", "1e30", "1000000000000.00", "0.001"):
        with pytest.raises(ValidationError):
            _Amount(amount=bad)
