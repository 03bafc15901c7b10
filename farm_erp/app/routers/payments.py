from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from datetime import date
from decimal import Decimal
from typing import Annotated, Optional

from ..allocation import (
    AllocationError,
    AllocationLine,
    OpenReceivable,
    check_fifo_fully_applied,
    check_manual_allocations,
    fifo_allocate,
    parse_amount,
)
from ..audit import write_audit_log
from ..db import get_conn, set_tenant_context
from ..deps import get_tenant_id, get_current_user, require_action
from ..money import MONEY_MAX_DIGITS, money_str, q_money, to_decimal
from ..posting import create_posting_group, find_posting_group_by_key, get_account_id
from ..roles import Action
from ..validation import AllocationMode, DocStatus, Money, PaymentDirection, PaymentMethod, PaymentPurpose

router = APIRouter(prefix="/payments", tags=["payments"])


class PaymentIn(BaseModel):
    direction: PaymentDirection
    party_id: str
    amount: Money
    payment_date: date
    method: PaymentMethod = "CASH"
    purpose: PaymentPurpose = "GENERAL"
    reference: Optional[str] = None
    notes: Optional[str] = None


class PaymentUpdate(BaseModel):
    party_id: Optional[str] = None
    amount: Optional[Money] = None
    payment_date: Optional[date] = None
    method: Optional[PaymentMethod] = None
    reference: Optional[str] = None
    notes: Optional[str] = None


class AllocationIn(BaseModel):
    sale_id: str
    amount: Money


class PaymentPostIn(BaseModel):
    posting_date: date
    idempotency_key: Optional[str] = None
    allocation_mode: AllocationMode = "FIFO"
    allocations: Optional[list[AllocationIn]] = None


def _load_open_sales(cur, tenant_id: str, party_id: str, as_of: Optional[date]) -> list[OpenReceivable]:
    # Invoices only; credit notes are instruments, not receivables to collect.
    cur.execute(
        """
        SELECT s.id AS sale_id, s.sale_no, s.posting_date,
               COALESCE(s.due_date, s.posting_date) AS due_date,
               s.amount - COALESCE(SUM(a.amount) FILTER (
                   WHERE a.status = 'ACTIVE' AND (%s::date IS NULL OR a.allocation_date <= %s::date)
               ), 0) AS outstanding
        FROM sales s
        LEFT JOIN sale_payment_allocations a ON a.sale_id = s.id AND a.tenant_id = s.tenant_id
        WHERE s.tenant_id = %s
          AND s.buyer_party_id = %s
          AND s.status = 'POSTED'
          AND s.reversal_posting_group_id IS NULL
          AND s.sale_kind = 'INVOICE'
        GROUP BY s.id
        ORDER BY s.posting_date ASC, s.created_at ASC
        """,
        (as_of, as_of, tenant_id, party_id),
    )
    return [OpenReceivable.from_row(r) for r in cur.fetchall() if to_decimal(r["outstanding"]) > 0]


def _assert_party(cur, tenant_id: str, party_id: str):
    cur.execute("SELECT 1 FROM parties WHERE tenant_id = %s AND id = %s", (tenant_id, party_id))
    if not cur.fetchone():
        raise HTTPException(status_code=400, detail="invalid party_id")


def _allocations_for_group(cur, tenant_id: str, posting_group_id: str) -> list[dict]:
    cur.execute(
        """
        SELECT id, sale_id, amount, allocation_date, status
        FROM sale_payment_allocations
        WHERE tenant_id = %s AND posting_group_id = %s
        ORDER BY created_at, id
        """,
        (tenant_id, posting_group_id),
    )
    return cur.fetchall()


@router.get("", dependencies=[Depends(require_action(Action.VIEW_RECORDS))])
def list_payments(
    direction: Optional[str] = None,
    status: Optional[DocStatus] = None,
    party_id: Optional[str] = None,
    limit: int = 200,
    tenant_id: str = Depends(get_tenant_id),
):
    if limit <= 0 or limit > 1000:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 1000")
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.cursor() as cur:
            sql = """
                SELECT p.id, p.direction, p.party_id, pa.name AS party_name, p.amount, p.payment_date,
                       p.method, p.purpose, p.reference, p.status, p.posting_group_id, p.posting_date,
                       p.reversal_posting_group_id, p.created_at
                FROM payments p
                JOIN parties pa ON pa.id = p.party_id
                WHERE p.tenant_id = %s
            """
            params = [tenant_id]
            if direction:
                sql += " AND p.direction = %s"
                params.append(direction.strip().upper())
            if status:
                sql += " AND p.status = %s"
                params.append(status)
            if party_id:
                sql += " AND p.party_id = %s"
                params.append(party_id)
            sql += " ORDER BY p.payment_date DESC, p.created_at DESC LIMIT %s"
            params.append(limit)
            cur.execute(sql, params)
            return {"payments": cur.fetchall()}


@router.post("", dependencies=[Depends(require_action(Action.EDIT_DRAFTS))])
def create_payment(data: PaymentIn, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    if data.amount <= 0:
        raise HTTPException(status_code=400, detail="amount must be > 0")
    if data.direction == "IN" and data.purpose != "GENERAL":
        raise HTTPException(status_code=400, detail="purpose WAGES is only valid for OUT payments")

    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                _assert_party(cur, tenant_id, data.party_id)
                cur.execute(
                    """
                    INSERT INTO payments
                      (id, tenant_id, direction, party_id, amount, payment_date, method, purpose, reference, notes, status, created_by)
                    VALUES
                      (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, 'DRAFT', %s)
                    RETURNING id
                    """,
                    (
                        tenant_id,
                        data.direction,
                        data.party_id,
                        q_money(data.amount),
                        data.payment_date,
                        data.method,
                        data.purpose,
                        (data.reference or None),
                        (data.notes or None),
                        user["user_id"],
                    ),
                )
                payment_id = cur.fetchone()["id"]
                write_audit_log(cur, tenant_id, user["user_id"], "payment_create", "payment", payment_id, data.model_dump())
                return {"id": payment_id}


@router.get("/allocation-preview", dependencies=[Depends(require_action(Action.VIEW_RECORDS))])
def allocation_preview(
    party_id: str,
    amount: Annotated[Decimal, Query(max_digits=MONEY_MAX_DIGITS, decimal_places=2)],
    posting_date: date,
    tenant_id: str = Depends(get_tenant_id),
):
    try:
        amount = parse_amount(amount)
    except AllocationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from None
    if amount <= 0:
        raise HTTPException(status_code=400, detail="amount must be > 0")
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.cursor() as cur:
            _assert_party(cur, tenant_id, party_id)
            open_sales = _load_open_sales(cur, tenant_id, party_id, posting_date)
    return fifo_allocate(amount, open_sales).to_dict()


@router.get("/{payment_id}", dependencies=[Depends(require_action(Action.VIEW_RECORDS))])
def get_payment(payment_id: str, tenant_id: str = Depends(get_tenant_id)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, direction, party_id, amount, payment_date, method, purpose, reference, notes,
                       status, posting_group_id, posting_date, reversal_posting_group_id, created_at, updated_at
                FROM payments
                WHERE tenant_id = %s AND id = %s
                """,
                (tenant_id, payment_id),
            )
            payment = cur.fetchone()
            if not payment:
                raise HTTPException(status_code=404, detail="payment not found")
            allocations = []
            if payment["posting_group_id"]:
                allocations = _allocations_for_group(cur, tenant_id, payment["posting_group_id"])
            return {"payment": payment, "allocations": allocations}


@router.patch("/{payment_id}", dependencies=[Depends(require_action(Action.EDIT_DRAFTS))])
def update_payment(payment_id: str, data: PaymentUpdate, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    patch = data.model_dump(exclude_none=True)
    if not patch:
        return {"ok": True}
    if "amount" in patch:
        if patch["amount"] <= 0:
            raise HTTPException(status_code=400, detail="amount must be > 0")
        patch["amount"] = q_money(patch["amount"])

    fields = []
    params = []
    for k, v in patch.items():
        fields.append(f"{k} = %s")
        params.append(v)
    params.extend([tenant_id, payment_id])

    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                if "party_id" in patch:
                    _assert_party(cur, tenant_id, patch["party_id"])
                cur.execute(
                    "SELECT status FROM payments WHERE tenant_id = %s AND id = %s FOR UPDATE",
                    (tenant_id, payment_id),
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="payment not found")
                if row["status"] != "DRAFT":
                    raise HTTPException(status_code=409, detail="only DRAFT payments can be edited")
                cur.execute(
                    f"""
                    UPDATE payments
                    SET {', '.join(fields)}, updated_at = now()
                    WHERE tenant_id = %s AND id = %s
                    """,
                    params,
                )
                write_audit_log(cur, tenant_id, user["user_id"], "payment_update", "payment", payment_id, patch)
                return {"ok": True}


@router.delete("/{payment_id}", dependencies=[Depends(require_action(Action.EDIT_DRAFTS))])
def delete_payment(payment_id: str, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM payments WHERE tenant_id = %s AND id = %s AND status = 'DRAFT' RETURNING id",
                    (tenant_id, payment_id),
                )
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="draft payment not found")
                write_audit_log(cur, tenant_id, user["user_id"], "payment_delete", "payment", payment_id)
                return {"ok": True}


def _party_payable_balance(cur, tenant_id: str, party_id, account_id: str, as_of: date) -> Decimal:
    """What the tenant still owes the party on a liability account as of `as_of`."""
    cur.execute(
        """
        SELECT COALESCE(SUM(le.credit_amount - le.debit_amount), 0) AS balance
        FROM ledger_entries le
        JOIN posting_groups pg ON pg.id = le.posting_group_id AND pg.tenant_id = le.tenant_id
        WHERE le.tenant_id = %s
          AND le.account_id = %s
          AND le.party_id = %s
          AND pg.posting_date <= %s
        """,
        (tenant_id, account_id, party_id, as_of),
    )
    row = cur.fetchone()
    return q_money(row["balance"] if row else 0)


def _resolve_allocations(cur, tenant_id: str, payment: dict, data: PaymentPostIn) -> list[AllocationLine]:
    open_sales = _load_open_sales(cur, tenant_id, str(payment["party_id"]), data.posting_date)
    amount = q_money(payment["amount"])
    try:
        if data.allocation_mode == "FIFO":
            preview = fifo_allocate(amount, open_sales)
            check_fifo_fully_applied(preview)
            return preview.suggested_allocations
        lines = [AllocationLine(sale_id=a.sale_id, amount=q_money(a.amount)) for a in (data.allocations or [])]
        check_manual_allocations(amount, open_sales, lines)
        return lines
    except AllocationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.post("/{payment_id}/post", dependencies=[Depends(require_action(Action.POST_DOCUMENTS))])
def post_payment(payment_id: str, data: PaymentPostIn, tenant_id: str = Depends(get_tenant_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_tenant_context(conn, tenant_id)
        with conn.transaction():
            with conn.cursor() as cur:
                # A retried submit carries the same key: hand back what the first attempt posted.
                existing = find_posting_group_by_key(cur, tenant_id, data.idempotency_key)
                if existing:
                    if str(existing["source_id"]) != str(payment_id) or existing["source_type"] != "PAYMENT":
                        raise HTTPException(status_code=409, detail="idempotency_key already used for another document")
                    return {
                        "id": payment_id,
                        "posting_group_id": existing["id"],
                        "allocations": _allocations_for_group(cur, tenant_id, existing["id"]),
                        "replayed": True,
                    }

                cur.execute(
                    """
                    SELECT id, direction, party_id, amount, method, purpose, status
                    FROM payments
                    WHERE tenant_id = %s AND id = %s
                    FOR UPDATE
                    """,
                    (tenant_id, payment_id),
                )
                payment = cur.fetchone()
                if not payment:
                    raise HTTPException(status_code=404, detail="payment not found")
                if payment["status"] != "DRAFT":
                    raise HTTPException(status_code=409, detail="only DRAFT payments can be posted")

                amount = q_money(payment["amount"])
                party_id = payment["party_id"]
                cash_account = get_account_id(cur, tenant_id, payment["method"])
                allocations: list[AllocationLine] = []
                if payment["direction"] == "IN":
                    allocations = _resolve_allocations(cur, tenant_id, payment, data)
                    counter_account = get_account_id(cur, tenant_id, "AR")
                    lines = [(cash_account, amount, 0, party_id), (counter_account, 0, amount, party_id)]
                else:
                    if data.allocations:
                        raise HTTPException(status_code=400, detail="allocations are only valid for IN payments")
                    code = "WAGES_PAYABLE" if payment["purpose"] == "WAGES" else "AP"
                    counter_account = get_account_id(cur, tenant_id, code)
                    balance = _party_payable_balance(cur, tenant_id, party_id, counter_account, data.posting_date)
                    if amount > balance:
                        raise HTTPException(
                            status_code=422,
                            detail=f"payment amount exceeds outstanding payable ({money_str(balance)})",
                        )
                    lines = [(counter_account, amount, 0, party_id), (cash_account, 0, amount, party_id)]

                pg_id = create_posting_group(
                    cur,
                    tenant_id,
                    source_type="PAYMENT",
                    source_id=payment_id,
                    posting_date=data.posting_date,
                    lines=lines,
                    idempotency_key=data.idempotency_key,
                    created_by=user["user_id"],
                )
                for line in allocations:
                    cur.execute(
                        """
                        INSERT INTO sale_payment_allocations
                          (id, tenant_id, sale_id, payment_id, posting_group_id, allocation_date, amount, status)
                        VALUES
                          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, 'ACTIVE')
                        """,
                        (tenant_id, line.sale_id, payment_id, pg_id, data.posting_date, line.amount),
                    )
                cur.execute(
                    """
                    UPDATE payments
                    SET status = 'POSTED', posting_group_id = %s, posting_date = %s, updated_at = now()
                    WHERE tenant_id = %s AND id = %s
                    """,
                    (pg_id, data.posting_date, tenant_id, payment_id),
                )
                write_audit_log(
                    cur,
                    tenant_id,
                    user["user_id"],
                    "payment_post",
                    "payment",
                    payment_id,
                    {
                        "posting_group_id": pg_id,
                        "allocation_mode": data.allocation_mode,
                        "allocations": [l.to_dict() for l in allocations],
                    },
                )
                return {
                    "id": payment_id,
                    "posting_group_id": pg_id,
                    "allocations": [{"sale_id": l.sale_id, "amount": money_str(l.amount)} for l in allocations],
                    "replayed": False,
                }
