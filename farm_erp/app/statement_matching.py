from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Iterable, Mapping, Optional

from .money import q_money, to_decimal


class StatementLineError(ValueError):
    pass


class ReconciliationStateError(ValueError):
    pass


class ReconciliationStatus(str, Enum):
    DRAFT = "DRAFT"
    FINALIZED = "FINALIZED"


class LineState(str, Enum):
    UNMATCHED = "UNMATCHED"
    MATCHED = "MATCHED"
    VOIDED = "VOIDED"


class LineAction(str, Enum):
    MATCH = "match"
    UNMATCH = "unmatch"
    VOID = "void"


# VOIDED has no outgoing edges.
_TRANSITIONS = {
    (LineState.UNMATCHED, LineAction.MATCH): LineState.MATCHED,
    (LineState.MATCHED, LineAction.UNMATCH): LineState.UNMATCHED,
    (LineState.UNMATCHED, LineAction.VOID): LineState.VOIDED,
    (LineState.MATCHED, LineAction.VOID): LineState.VOIDED,
}

_TRANSITION_ERRORS = {
    (LineState.MATCHED, LineAction.MATCH): "statement line already has an active match",
    (LineState.UNMATCHED, LineAction.UNMATCH): "statement line has no active match",
}


def transition(state: LineState, action: LineAction) -> LineState:
    nxt = _TRANSITIONS.get((LineState(state), LineAction(action)))
    if nxt is not None:
        return nxt
    detail = _TRANSITION_ERRORS.get((LineState(state), LineAction(action)))
    raise StatementLineError(detail or "statement line is not ACTIVE")


def assert_draft(status) -> None:
    if ReconciliationStatus(status) is not ReconciliationStatus.DRAFT:
        raise ReconciliationStateError("only DRAFT reconciliations can be modified")


@dataclass(frozen=True)
class StatementLine:
    id: str
    line_date: date
    amount: Decimal
    description: Optional[str] = None
    reference: Optional[str] = None
    is_matched: bool = False
    matched_ledger_entry_id: Optional[str] = None
    is_voided: bool = False

    @property
    def state(self) -> LineState:
        if self.is_voided:
            return LineState.VOIDED
        return LineState.MATCHED if self.is_matched else LineState.UNMATCHED

    @classmethod
    def from_row(cls, row: Mapping) -> "StatementLine":
        matched_id = row.get("matched_ledger_entry_id")
        return cls(
            id=str(row["id"]),
            line_date=_as_date(row["line_date"]),
            amount=to_decimal(row["amount"]),
            description=row.get("description"),
            reference=row.get("reference"),
            is_matched=bool(row.get("is_matched")),
            matched_ledger_entry_id=str(matched_id) if matched_id else None,
            is_voided=str(row.get("status") or "ACTIVE").upper() == "VOID",
        )


@dataclass(frozen=True)
class LedgerEntryCandidate:
    ledger_entry_id: str
    posting_date: date
    debit_amount: Decimal
    credit_amount: Decimal
    description: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping) -> "LedgerEntryCandidate":
        return cls(
            ledger_entry_id=str(row["ledger_entry_id"]),
            posting_date=_as_date(row["posting_date"]),
            debit_amount=to_decimal(row.get("debit_amount")),
            credit_amount=to_decimal(row.get("credit_amount")),
            description=row.get("description"),
        )


def _as_date(v) -> date:
    if isinstance(v, date):
        return v
    return date.fromisoformat(str(v)[:10])


def matched_entry_ids(statement_lines: Iterable[StatementLine]) -> set[str]:
    return {
        l.matched_ledger_entry_id
        for l in statement_lines
        if l.is_matched and l.matched_ledger_entry_id and not l.is_voided
    }


def eligible_candidates(
    line: StatementLine,
    uncleared_debits: Iterable[LedgerEntryCandidate],
    uncleared_credits: Iterable[LedgerEntryCandidate],
    cleared_entries: Iterable[LedgerEntryCandidate],
    statement_lines: Iterable[StatementLine],
) -> list[LedgerEntryCandidate]:
    """
    Entries a statement line may be matched to: deposits (amount > 0) take debit-side
    entries, withdrawals (amount < 0) credit-side ones. Uncleared entries come first,
    then cleared ones, each in source order. Entries already matched to any line are out.
    """
    if line.amount > 0:
        uncleared = list(uncleared_debits)
        cleared = [e for e in cleared_entries if e.debit_amount > 0]
    elif line.amount < 0:
        uncleared = list(uncleared_credits)
        cleared = [e for e in cleared_entries if e.credit_amount > 0]
    else:
        return []
    taken = matched_entry_ids(statement_lines)
    return [e for e in uncleared + cleared if e.ledger_entry_id not in taken]


def check_sign_compatible(line_amount, debit_amount, credit_amount) -> None:
    amount = to_decimal(line_amount)
    if amount > 0 and not to_decimal(debit_amount) > 0:
        raise StatementLineError("statement deposit should match a ledger debit entry")
    if amount < 0 and not to_decimal(credit_amount) > 0:
        raise StatementLineError("statement withdrawal should match a ledger credit entry")


def summarize_statement(lines: Iterable[StatementLine], matched_ledger_net) -> dict:
    active = [l for l in lines if not l.is_voided]
    lines_total = sum((l.amount for l in active), Decimal("0"))
    matched_total = sum((l.amount for l in active if l.is_matched), Decimal("0"))
    ledger_total = to_decimal(matched_ledger_net)
    return {
        "lines_total": q_money(lines_total),
        "matched_lines_total": q_money(matched_total),
        "unmatched_lines_total": q_money(lines_total - matched_total),
        "matched_ledger_total": q_money(ledger_total),
        "difference_vs_matched_ledger": q_money(lines_total - ledger_total),
    }
