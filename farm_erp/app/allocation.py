"""
Payment IN allocation against open sale receivables.

FIFO walks the open sales in the order given (callers pass them oldest-first:
posting_date, then created_at) and fills each one until the payment runs out.
MANUAL takes the user's per-sale amounts and checks them against the same
open-sales snapshot before anything is posted.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable, Mapping, Optional

from .money import MAX_AMOUNT, MONEY_TOLERANCE, money_str, q_money, to_decimal

FIFO = "FIFO"
MANUAL = "MANUAL"


class AllocationError(ValueError):
    pass


@dataclass(frozen=True)
class OpenReceivable:
    sale_id: str
    sale_no: Optional[str]
    posting_date: date
    due_date: date
    outstanding: Decimal

    @classmethod
    def from_row(cls, row: Mapping) -> "OpenReceivable":
        posting = _as_date(row["posting_date"])
        return cls(
            sale_id=str(row["sale_id"]),
            sale_no=row.get("sale_no"),
            posting_date=posting,
            due_date=_as_date(row.get("due_date")) or posting,
            outstanding=q_money(row.get("outstanding")),
        )

    def to_dict(self) -> dict:
        return {
            "sale_id": self.sale_id,
            "sale_no": self.sale_no,
            "posting_date": self.posting_date.isoformat(),
            "due_date": self.due_date.isoformat(),
            "outstanding": money_str(self.outstanding),
        }


@dataclass(frozen=True)
class AllocationLine:
    sale_id: str
    amount: Decimal

    def to_dict(self) -> dict:
        return {"sale_id": self.sale_id, "amount": money_str(self.amount)}


@dataclass(frozen=True)
class AllocationPreview:
    payment_amount: Decimal
    suggested_allocations: list[AllocationLine] = field(default_factory=list)
    open_sales: list[OpenReceivable] = field(default_factory=list)
    unallocated_amount: Decimal = Decimal("0")

    @property
    def total_receivable(self) -> Decimal:
        return sum((s.outstanding for s in self.open_sales), Decimal("0"))

    def to_dict(self) -> dict:
        by_id = {s.sale_id: s for s in self.open_sales}
        suggested = []
        for line in self.suggested_allocations:
            sale = by_id[line.sale_id]
            suggested.append({**sale.to_dict(), "amount": money_str(line.amount)})
        return {
            "total_receivable": money_str(self.total_receivable),
            "payment_amount": money_str(self.payment_amount),
            "open_sales": [s.to_dict() for s in self.open_sales],
            "suggested_allocations": suggested,
            "unallocated_amount": money_str(self.unallocated_amount),
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "AllocationPreview":
        return cls(
            payment_amount=q_money(data.get("payment_amount")),
            suggested_allocations=[
                AllocationLine(sale_id=str(a["sale_id"]), amount=q_money(a["amount"]))
                for a in (data.get("suggested_allocations") or [])
            ],
            open_sales=[OpenReceivable.from_row(s) for s in (data.get("open_sales") or [])],
            unallocated_amount=q_money(data.get("unallocated_amount")),
        )


def _as_date(v) -> Optional[date]:
    if v is None or v == "":
        return None
    if isinstance(v, date):
        return v
    return date.fromisoformat(str(v)[:10])


def fifo_allocate(payment_amount, open_sales: Iterable[OpenReceivable]) -> AllocationPreview:
    amount = q_money(parse_amount(payment_amount))
    sales = list(open_sales)
    remaining = amount
    suggested: list[AllocationLine] = []
    for sale in sales:
        if remaining <= 0:
            break
        if sale.outstanding <= 0:
            continue
        alloc = min(remaining, sale.outstanding)
        suggested.append(AllocationLine(sale_id=sale.sale_id, amount=alloc))
        remaining -= alloc
    return AllocationPreview(
        payment_amount=amount,
        suggested_allocations=suggested,
        open_sales=sales,
        unallocated_amount=max(Decimal("0"), remaining),
    )


def check_fifo_fully_applied(preview: AllocationPreview) -> None:
    if preview.unallocated_amount > MONEY_TOLERANCE:
        raise AllocationError(
            f"payment amount ({money_str(preview.payment_amount)}) exceeds total outstanding receivables; "
            f"remaining unallocated: {money_str(preview.unallocated_amount)}"
        )


def parse_amount(raw) -> Decimal:
    """Decimal-string parser for user input; blank is 0, NaN/infinity and out-of-range values are refused."""
    try:
        value = to_decimal(raw)
    except ValueError:
        raise AllocationError(f"invalid amount: {raw!r}") from None
    if abs(value) > MAX_AMOUNT:
        raise AllocationError(f"amount out of range: {raw!r}")
    return value


def clamp_entered_amount(raw, outstanding) -> Decimal:
    """Force a typed-in amount into [0, outstanding]; unparseable input counts as 0."""
    try:
        value = to_decimal(raw)
    except ValueError:
        return Decimal("0")
    cap = to_decimal(outstanding)
    if value < 0:
        return Decimal("0")
    if value > cap:
        return cap
    return value


def manual_lines(entered: Mapping[str, object]) -> list[AllocationLine]:
    # Zero/blank entries mean "not allocated" and are dropped.
    lines = []
    for sale_id, raw in entered.items():
        amount = parse_amount(raw)
        if amount == 0:
            continue
        lines.append(AllocationLine(sale_id=str(sale_id), amount=amount))
    return lines


def allocated_total(lines: Iterable[AllocationLine]) -> Decimal:
    return sum((l.amount for l in lines), Decimal("0"))


def allocations_balance(payment_amount, lines: Iterable[AllocationLine]) -> bool:
    return abs(allocated_total(lines) - to_decimal(payment_amount)) <= MONEY_TOLERANCE


def check_manual_allocations(payment_amount, open_sales: Iterable[OpenReceivable], lines: Iterable[AllocationLine]) -> None:
    lines = list(lines)
    payment_amount = parse_amount(payment_amount)
    if not lines:
        raise AllocationError("allocations are required for MANUAL mode")
    by_id = {s.sale_id: s for s in open_sales}
    seen: set[str] = set()
    for line in lines:
        if line.sale_id in seen:
            raise AllocationError(f"sale {line.sale_id} is allocated more than once")
        seen.add(line.sale_id)
        sale = by_id.get(line.sale_id)
        if sale is None:
            raise AllocationError(f"sale {line.sale_id} is not an open receivable for this party")
        amount = parse_amount(line.amount)
        if amount <= 0:
            raise AllocationError("allocation amount must be greater than 0")
        if amount > sale.outstanding:
            raise AllocationError(
                f"allocation amount ({money_str(amount)}) exceeds outstanding "
                f"({money_str(sale.outstanding)}) for sale {sale.sale_no or sale.sale_id}"
            )
    if not allocations_balance(payment_amount, lines):
        raise AllocationError(
            f"total allocated ({money_str(allocated_total(lines))}) must equal payment amount "
            f"({money_str(payment_amount)})"
        )
