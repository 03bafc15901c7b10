from __future__ import annotations

from typing import Callable, Optional

from ..app.roles import Action
from ..app.statement_matching import (
    LedgerEntryCandidate,
    ReconciliationStatus,
    StatementLine,
    eligible_candidates,
)
from .session import SessionContext

# control -> action the session must be allowed
CONTROL_ACTIONS = {
    "clear": Action.RECONCILE_BANK,
    "unclear": Action.RECONCILE_BANK,
    "add_line": Action.RECONCILE_BANK,
    "void_line": Action.RECONCILE_BANK,
    "match": Action.RECONCILE_BANK,
    "unmatch": Action.RECONCILE_BANK,
    "finalize": Action.FINALIZE_RECONCILIATION,
}


class ReconciliationView:
    """Read-side of a reconciliation report plus the page's selection state."""

    def __init__(self, report: dict, session: SessionContext):
        self.session = session
        self.selected_uncleared: set[str] = set()
        self.selected_cleared: set[str] = set()
        self.refresh(report)

    def refresh(self, report: dict):
        self.report = report
        self.lines = [StatementLine.from_row(l) for l in (report.get("statement_lines") or [])]
        self.uncleared_debits = [LedgerEntryCandidate.from_row(e) for e in (report.get("uncleared_debits") or [])]
        self.uncleared_credits = [LedgerEntryCandidate.from_row(e) for e in (report.get("uncleared_credits") or [])]
        self.cleared_entries = [LedgerEntryCandidate.from_row(e) for e in (report.get("cleared_entries") or [])]
        uncleared_ids = {e.ledger_entry_id for e in self.uncleared_debits + self.uncleared_credits}
        cleared_ids = {e.ledger_entry_id for e in self.cleared_entries}
        self.selected_uncleared &= uncleared_ids
        self.selected_cleared &= cleared_ids

    @property
    def status(self) -> ReconciliationStatus:
        return ReconciliationStatus(self.report.get("status") or "DRAFT")

    @property
    def is_draft(self) -> bool:
        return self.status is ReconciliationStatus.DRAFT

    def controls(self) -> frozenset[str]:
        if not self.is_draft:
            return frozenset()
        return frozenset(c for c, action in CONTROL_ACTIONS.items() if self.session.can(action))

    def line(self, line_id: str) -> Optional[StatementLine]:
        return next((l for l in self.lines if l.id == str(line_id)), None)

    def candidates_for(self, line_id: str) -> list[LedgerEntryCandidate]:
        line = self.line(line_id)
        if line is None or line.is_voided or line.is_matched:
            return []
        return eligible_candidates(line, self.uncleared_debits, self.uncleared_credits, self.cleared_entries, self.lines)

    def toggle_uncleared(self, entry_id: str):
        self.selected_uncleared ^= {str(entry_id)}

    def toggle_cleared(self, entry_id: str):
        self.selected_cleared ^= {str(entry_id)}

    def _bulk(self, selection: set[str], control: str, action: Callable[[list[str]], object]):
        if control not in self.controls():
            raise PermissionError(f"{control} is not available")
        if not selection:
            return None
        result = action(sorted(selection))
        # Only a confirmed round-trip empties the selection.
        selection.clear()
        return result

    def clear_selected(self, action: Callable[[list[str]], object]):
        return self._bulk(self.selected_uncleared, "clear", action)

    def unclear_selected(self, action: Callable[[list[str]], object]):
        return self._bulk(self.selected_cleared, "unclear", action)

    def summary(self) -> dict:
        return dict(self.report.get("statement") or {})

