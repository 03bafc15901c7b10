from datetime import date
from decimal import Decimal

import pytest

from farm_erp.app.allocation import AllocationError, OpenReceivable, fifo_allocate
from farm_erp.client.allocation_form import PaymentAllocationForm


OPEN = [
    OpenReceivable("A", "S-1", date(2026, 1, 1), date(2026, 1, 31), Decimal("120.00")),
    OpenReceivable("B", "S-2", date(2026, 1, 5), date(2026, 2, 4), Decimal("250.00")),
]


class _Fetcher:
    def __init__(self):
        self.calls = []

    def __call__(self, party_id, amount, posting_date):
        self.calls.append((party_id, amount, posting_date))
        return fifo_allocate(amount, OPEN).to_dict()


def _form(amount="300"):
    return PaymentAllocationForm("IN", party_id="p1", amount=amount, payment_date=date(2026, 2, 1))


def test_preview_needs_incoming_payment_with_party_amount_and_date():
    assert _form().preview_enabled
    assert not _form(amount="0").preview_enabled
    assert not _form(amount="abc").preview_enabled
    assert not PaymentAllocationForm("IN", amount="10", payment_date=date(2026, 2, 1)).preview_enabled
    assert not PaymentAllocationForm("OUT", party_id="p1", amount="10", payment_date=date(2026, 2, 1)).preview_enabled


def test_preview_is_cached_per_key_and_dropped_on_change():
    fetch = _Fetcher()
    form = _form()
    form.load_preview(fetch)
    form.load_preview(fetch)
    assert fetch.calls == [("p1", "300.00", "2026-02-01")]

    form.set_amount("250")
    assert form.preview is None
    form.load_preview(fetch)
    assert fetch.calls[-1] == ("p1", "250.00", "2026-02-01")


def test_direction_switch_keeps_amount_and_key_includes_direction():
    form = _form()
    form.load_preview(_Fetcher())
    key = form.preview_key
    form.set_direction("OUT")
    assert form.amount == "300"
    assert form.preview is None
    assert form.preview_key is None
    form.set_direction("IN")
    assert form.preview_key == key


def test_switching_to_manual_seeds_from_fifo_suggestion():
    form = _form()
    form.load_preview(_Fetcher())
    form.set_mode("MANUAL")
    assert form.manual == {"A": "120.00", "B": "180.00"}
    assert form.can_submit
    form.set_mode("FIFO")
    assert form.manual == {}


def test_manual_amount_is_clamped_to_outstanding():
    form = _form()
    form.load_preview(_Fetcher())
    form.set_mode("MANUAL")
    assert form.set_manual_amount("A", "500") == "120.00"
    assert form.set_manual_amount("A", "-4") == "0.00"
    with pytest.raises(AllocationError):
        form.set_manual_amount("Z", "1")


def test_manual_total_must_match_payment():
    form = _form()
    form.load_preview(_Fetcher())
    form.set_mode("MANUAL")
    form.set_manual_amount("A", "100")
    form.set_manual_amount("B", "200")
    assert form.manual_total == Decimal("300.00")
    assert form.submit_errors() == {}
    assert form.payload() == {
        "allocation_mode": "MANUAL",
        "allocations": [{"sale_id": "A", "amount": "100.00"}, {"sale_id": "B", "amount": "200.00"}],
    }

    form.set_manual_amount("B", "150")
    errors = form.submit_errors()
    assert "must equal payment amount" in errors["allocations"]
    assert not form.can_submit


def test_overlong_manual_entry_written_directly_is_still_caught():
    form = _form()
    form.load_preview(_Fetcher())
    form.set_mode("MANUAL")
    form.manual = {"A": "130.00", "B": "170.00"}
    assert "exceeds outstanding" in form.submit_errors()["allocations"]


def test_fifo_warns_when_payment_exceeds_receivable():
    form = _form(amount="400")
    form.load_preview(_Fetcher())
    assert form.unallocated_warning == "30.00 will remain unallocated (exceeds receivable)"
    assert form.payload() == {"allocation_mode": "FIFO"}
    form.set_amount("300")
    form.load_preview(_Fetcher())
    assert form.unallocated_warning is None


def test_field_errors():
    form = PaymentAllocationForm("IN", amount="")
    errors = form.submit_errors()
    assert set(errors) == {"party_id", "amount", "payment_date"}


@pytest.mark.parametrize("amount", ["nan", "Infinity", "1e30"])
def test_unrepresentable_amount_is_a_field_error_not_a_crash(amount):
    form = _form(amount=amount)
    assert not form.preview_enabled
    assert form.preview_key is None
    assert form.load_preview(_Fetcher()) is None
    errors = form.submit_errors()
    assert set(errors) == {"amount"}
    assert "amount" in errors["amount"]


def test_manual_entry_of_nan_counts_as_zero():
    form = _form()
    form.load_preview(_Fetcher())
    form.set_mode("MANUAL")
    assert form.set_manual_amount("A", "NaN") == "0.00"
    assert form.set_manual_amount("B", "1e30") == "250.00"


def test_outgoing_payment_has_no_allocation_payload():
    form = PaymentAllocationForm("OUT", party_id="p1", amount="10", payment_date=date(2026, 2, 1))
    assert form.submit_errors() == {}
    assert form.payload() == {}
