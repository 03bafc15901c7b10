from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Literal

from pydantic import BeforeValidator, Field

from .money import MONEY_MAX_DIGITS


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


# Canonical codes mirror the CHECK constraints in `farm_erp/db/migrations/001_init.sql`.
PaymentDirection = Annotated[Literal["IN", "OUT"], BeforeValidator(_to_upper_str)]
PaymentMethod = Annotated[Literal["CASH", "BANK"], BeforeValidator(_to_upper_str)]
PaymentPurpose = Annotated[Literal["GENERAL", "WAGES"], BeforeValidator(_to_upper_str)]
AllocationMode = Annotated[Literal["FIFO", "MANUAL"], BeforeValidator(_to_upper_str)]
DocStatus = Annotated[Literal["DRAFT", "POSTED", "REVERSED"], BeforeValidator(_to_upper_str)]
SaleKind = Annotated[Literal["INVOICE", "CREDIT_NOTE"], BeforeValidator(_to_upper_str)]

# Only cash-like system accounts can be reconciled against a statement.
ReconAccountCode = Annotated[Literal["BANK", "CASH"], BeforeValidator(_to_upper_str)]

# numeric(14, 2); NaN and infinity are refused by pydantic's Decimal validator.
Money = Annotated[Decimal, Field(max_digits=MONEY_MAX_DIGITS, decimal_places=2)]
