from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Callable, Optional

from ..app.allocation import (
    FIFO,
    MANUAL,
    AllocationError,
    AllocationPreview,
    allocated_total,
    check_manual_allocations,
    clamp_entered_amount,
    manual_lines,
    parse_amount,
)
from ..app.money import money_str


class PaymentAllocationForm:
    """
    Client state behind the payment form's allocation panel.

    The preview is tied to (direction, party, amount, date); changing any of them
    drops it, and the caller fetches a fresh one. Manual amounts are kept as the
    strings the user typed, already clamped to each sale's outstanding.
    """

    def __init__(self, direction: str = "IN", party_id: Optional[str] = None, amount: str = "", payment_date: Optional[date] = None):
        self.direction = direction.upper()
        self.party_id = party_id
        self.amount = amount
        self.payment_date = payment_date
        self.mode = FIFO
        self.manual: dict[str, str] = {}
        self.preview: Optional[AllocationPreview] = None
        self._preview_for = None

    def _amount_value(self) -> Optional[Decimal]:
        try:
            return parse_amount(self.amount)
        except AllocationError:
            return None

    @property
    def preview_enabled(self) -> bool:
        return (
            self.direction == "IN"
            and bool(self.party_id)
            and (self._amount_value() or 0) > 0
            and self.payment_date is not None
        )

    @property
    def preview_key(self):
        if not self.preview_enabled:
            return None
        return (self.direction, self.party_id, money_str(self._amount_value()), self.payment_date.isoformat())

    def _invalidate(self):
        if self._preview_for != self.preview_key:
            self.preview = None
            self._preview_for = None
            self.manual = {}

    def set_direction(self, direction: str):
        # The typed amount survives a direction switch.
        self.direction = direction.upper()
        self._invalidate()

    def set_party(self, party_id: Optional[str]):
        self.party_id = party_id
        self._invalidate()

    def set_amount(self, amount: str):
        self.amount = amount
        self._invalidate()

    def set_payment_date(self, payment_date: Optional[date]):
        self.payment_date = payment_date
        self._invalidate()

    def load_preview(self, fetch: Callable[[str, str, str], dict]) -> Optional[AllocationPreview]:
        """`fetch(party_id, amount, posting_date)` returns the allocation-preview JSON."""
        key = self.preview_key
        if key is None:
            return None
        if self.preview is not None and self._preview_for == key:
            return self.preview
        data = fetch(self.party_id, key[2], key[3])
        self.preview = AllocationPreview.from_dict(data)
        self._preview_for = key
        if self.mode == MANUAL:
            self._seed_manual()
        return self.preview

    def _seed_manual(self):
        self.manual = {}
        if self.preview is None:
            return
        for line in self.preview.suggested_allocations:
            self.manual[line.sale_id] = money_str(line.amount)

    def set_mode(self, mode: str):
        mode = mode.upper()
        if mode not in (FIFO, MANUAL):
            raise ValueError(f"unknown allocation mode {mode}")
        self.mode = mode
        if mode == MANUAL:
            self._seed_manual()
        else:
            self.manual = {}

    def _outstanding(self, sale_id: str) -> Decimal:
        if self.preview is None:
            raise AllocationError("allocation preview not loaded")
        for sale in self.preview.open_sales:
            if sale.sale_id == sale_id:
                return sale.outstanding
        raise AllocationError(f"sale {sale_id} is not an open receivable for this party")

    def set_manual_amount(self, sale_id: str, raw) -> str:
        value = clamp_entered_amount(raw, self._outstanding(sale_id))
        self.manual[sale_id] = money_str(value)
        return self.manual[sale_id]

    @property
    def manual_total(self) -> Decimal:
        return allocated_total(manual_lines(self.manual))

    @property
    def unallocated_warning(self) -> Optional[str]:
        if self.mode != FIFO or self.preview is None:
            return None
        if self.preview.unallocated_amount > 0:
            return f"{money_str(self.preview.unallocated_amount)} will remain unallocated (exceeds receivable)"
        return None

    def submit_errors(self) -> dict[str, str]:
        errors: dict[str, str] = {}
        if not self.party_id:
            errors["party_id"] = "party is required"
        try:
            amount = parse_amount(self.amount)
        except AllocationError as exc:
            errors["amount"] = str(exc)
        else:
            if amount <= 0:
                errors["amount"] = "amount must be greater than 0"
        if self.payment_date is None:
            errors["payment_date"] = "payment date is required"
        if self.direction != "IN" or self.mode != MANUAL or errors:
            return errors
        if self.preview is None:
            errors["allocations"] = "allocation preview not loaded"
            return errors
        try:
            check_manual_allocations(amount, self.preview.open_sales, manual_lines(self.manual))
        except AllocationError as exc:
            errors["allocations"] = str(exc)
        return errors

    @property
    def can_submit(self) -> bool:
        return not self.submit_errors()

    def payload(self) -> dict:
        if self.direction != "IN":
            return {}
        if self.mode == FIFO:
            return {"allocation_mode": FIFO}
        return {
            "allocation_mode": MANUAL,
            "allocations": [l.to_dict() for l in manual_lines(self.manual)],
        }
