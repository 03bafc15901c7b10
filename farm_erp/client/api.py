from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from ..app.config import settings
from .session import SessionContext

USER_AGENT = "farm-erp-client/1.0"
GENERIC_ERROR = "request failed"


class ApiError(Exception):
    """Non-2xx response (or transport failure, status 0) with the server's message."""

    def __init__(self, status: int, detail: str, body: Any = None):
        super().__init__(f"HTTP {status}: {detail}")
        self.status = status
        self.detail = detail
        self.body = body


def _detail_from_body(body: str) -> tuple[str, Any]:
    try:
        parsed = json.loads(body) if body else None
    except ValueError:
        return (body[:500] or GENERIC_ERROR), body
    if isinstance(parsed, dict):
        detail = parsed.get("detail") or parsed.get("error") or parsed.get("message")
        if isinstance(detail, str) and detail:
            return detail, parsed
    return GENERIC_ERROR, parsed


@dataclass
class ApiClient:
    session: SessionContext = field(default_factory=SessionContext)
    api_base: str = ""
    timeout_s: Optional[float] = None

    def __post_init__(self):
        if not self.api_base:
            self.api_base = settings.api_base_url

    def req_json(self, method: str, path: str, payload: Any | None = None, params: Optional[dict] = None) -> dict:
        url = self.api_base.rstrip("/") + path
        if params:
            clean = {k: v for k, v in params.items() if v is not None}
            if clean:
                url += "?" + urlencode(clean)
        data = None
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            **self.session.headers(path),
        }
        if payload is not None:
            data = json.dumps(payload, default=str).encode("utf-8")
        req = Request(url, data=data, headers=headers, method=method)
        try:
            if self.timeout_s is None:
                resp_cm = urlopen(req)
            else:
                resp_cm = urlopen(req, timeout=self.timeout_s)
            with resp_cm as resp:
                body = resp.read().decode("utf-8")
        except HTTPError as e:
            raw = e.read().decode("utf-8", errors="replace")
            detail, parsed = _detail_from_body(raw)
            raise ApiError(e.code, detail, parsed) from None
        except URLError as e:
            raise ApiError(0, str(e.reason) or GENERIC_ERROR) from None
        return json.loads(body) if body else {}

    def get(self, path: str, **params) -> dict:
        return self.req_json("GET", path, params=params)

    def post(self, path: str, payload: Any | None = None) -> dict:
        return self.req_json("POST", path, payload if payload is not None else {})

    def patch(self, path: str, payload: Any) -> dict:
        return self.req_json("PATCH", path, payload)

    def delete(self, path: str) -> dict:
        return self.req_json("DELETE", path)

    # auth

    def login(self, email: str, password: str) -> SessionContext:
        res = self.req_json("POST", "/auth/login", {"email": email, "password": password})
        self.session.login(res)
        return self.session

    def logout(self) -> None:
        try:
            if self.session.is_authenticated:
                self.req_json("POST", "/auth/logout", {})
        finally:
            self.session.clear()

    def me(self) -> dict:
        return self.get("/auth/me")

    def select_tenant(self, tenant_id: str) -> None:
        self.session.select_tenant(tenant_id)
        self.post("/auth/select-tenant", {"tenant_id": tenant_id})

    # resources

    def resource(self, name: str) -> "Resource":
        return Resource(self, "/" + name.strip("/"))

    @property
    def advances(self) -> "Resource":
        return self.resource("advances")

    @property
    def sales(self) -> "Resource":
        return self.resource("sales")

    @property
    def crop_cycles(self) -> "Resource":
        return self.resource("crop-cycles")

    @property
    def land_allocations(self) -> "Resource":
        return self.resource("land-allocations")

    @property
    def parties(self) -> "Resource":
        return self.resource("parties")

    @property
    def daily_book_entries(self) -> "Resource":
        return self.resource("daily-book-entries")

    @property
    def payables(self) -> "Resource":
        return self.resource("payables")

    @property
    def payments(self) -> "PaymentsApi":
        return PaymentsApi(self, "/payments")

    @property
    def posting_groups(self) -> "PostingGroupsApi":
        return PostingGroupsApi(self)

    @property
    def bank_reconciliations(self) -> "BankReconciliationApi":
        return BankReconciliationApi(self)

    @property
    def platform(self) -> "PlatformApi":
        return PlatformApi(self)

    @property
    def dev(self) -> "DevApi":
        return DevApi(self)

    def report(self, name: str, **params) -> dict:
        return self.get("/reports/" + name.strip("/"), **params)


@dataclass
class Resource:
    client: ApiClient
    base: str

    def list(self, **params) -> dict:
        return self.client.get(self.base, **params)

    def get(self, record_id: str) -> dict:
        return self.client.get(f"{self.base}/{record_id}")

    def create(self, payload: dict) -> dict:
        return self.client.post(self.base, payload)

    def update(self, record_id: str, payload: dict) -> dict:
        return self.client.patch(f"{self.base}/{record_id}", payload)

    def delete(self, record_id: str) -> dict:
        return self.client.delete(f"{self.base}/{record_id}")

    def post_document(self, record_id: str, payload: dict) -> dict:
        return self.client.post(f"{self.base}/{record_id}/post", payload)


class PaymentsApi(Resource):
    def allocation_preview(self, party_id: str, amount, posting_date) -> dict:
        return self.client.get(
            f"{self.base}/allocation-preview",
            party_id=party_id,
            amount=str(amount),
            posting_date=str(posting_date),
        )


@dataclass
class PostingGroupsApi:
    client: ApiClient

    def get(self, posting_group_id: str) -> dict:
        return self.client.get(f"/posting-groups/{posting_group_id}")

    def reverse(self, posting_group_id: str, posting_date, reason: Optional[str] = None) -> dict:
        return self.client.post(
            f"/posting-groups/{posting_group_id}/reverse",
            {"posting_date": str(posting_date), "reason": reason},
        )


@dataclass
class BankReconciliationApi:
    client: ApiClient
    base: str = "/bank-reconciliations"

    def list(self, account_code: Optional[str] = None, limit: int = 50) -> dict:
        return self.client.get(self.base, account_code=account_code, limit=limit)

    def create(self, account_code: str, statement_date, statement_balance, notes: Optional[str] = None) -> dict:
        return self.client.post(
            self.base,
            {
                "account_code": account_code,
                "statement_date": str(statement_date),
                "statement_balance": str(statement_balance),
                "notes": notes,
            },
        )

    def report(self, rec_id: str) -> dict:
        return self.client.get(f"{self.base}/{rec_id}")

    def clear(self, rec_id: str, ledger_entry_ids: list[str], cleared_date=None) -> dict:
        payload = {"ledger_entry_ids": list(ledger_entry_ids)}
        if cleared_date is not None:
            payload["cleared_date"] = str(cleared_date)
        return self.client.post(f"{self.base}/{rec_id}/clear", payload)

    def unclear(self, rec_id: str, ledger_entry_ids: list[str], reason: Optional[str] = None) -> dict:
        return self.client.post(f"{self.base}/{rec_id}/unclear", {"ledger_entry_ids": list(ledger_entry_ids), "reason": reason})

    def finalize(self, rec_id: str) -> dict:
        return self.client.post(f"{self.base}/{rec_id}/finalize")

    def statement_lines(self, rec_id: str, include_voided: bool = False) -> dict:
        return self.client.get(f"{self.base}/{rec_id}/statement-lines", include_voided=str(include_voided).lower())

    def add_statement_line(self, rec_id: str, line_date, amount, description: Optional[str] = None, reference: Optional[str] = None) -> dict:
        return self.client.post(
            f"{self.base}/{rec_id}/statement-lines",
            {"line_date": str(line_date), "amount": str(amount), "description": description, "reference": reference},
        )

    def void_line(self, rec_id: str, line_id: str, reason: Optional[str] = None) -> dict:
        return self.client.post(f"{self.base}/{rec_id}/statement-lines/{line_id}/void", {"reason": reason})

    def match_line(self, rec_id: str, line_id: str, ledger_entry_id: str) -> dict:
        return self.client.post(f"{self.base}/{rec_id}/statement-lines/{line_id}/match", {"ledger_entry_id": ledger_entry_id})

    def unmatch_line(self, rec_id: str, line_id: str, reason: Optional[str] = None) -> dict:
        return self.client.post(f"{self.base}/{rec_id}/statement-lines/{line_id}/unmatch", {"reason": reason})

    def candidates(self, rec_id: str, line_id: str) -> dict:
        return self.client.get(f"{self.base}/{rec_id}/statement-lines/{line_id}/candidates")


@dataclass
class PlatformApi:
    client: ApiClient

    def list_tenants(self, status: Optional[str] = None) -> dict:
        return self.client.get("/platform/tenants", status=status)

    def create_tenant(self, name: str) -> dict:
        return self.client.post("/platform/tenants", {"name": name})

    def update_tenant(self, tenant_id: str, **fields) -> dict:
        return self.client.patch(f"/platform/tenants/{tenant_id}", fields)

    def start_impersonation(self, tenant_id: str) -> dict:
        res = self.client.post("/platform/impersonation/start", {"tenant_id": tenant_id})
        self.client.session.impersonate(tenant_id, res.get("target_tenant_name"))
        return res

    def stop_impersonation(self) -> dict:
        res = self.client.post("/platform/impersonation/stop")
        self.client.session.stop_impersonation()
        return res


@dataclass
class DevApi:
    client: ApiClient

    def _guard(self):
        if not settings.dev_tools_enabled:
            raise ApiError(404, "dev tools are disabled")

    def list_tenants(self) -> dict:
        self._guard()
        return self.client.get("/dev/tenants")

    def create_tenant(self, name: str) -> dict:
        self._guard()
        return self.client.post("/dev/tenants", {"name": name})

    def delete_tenant(self, tenant_id: str) -> dict:
        self._guard()
        return self.client.delete(f"/dev/tenants/{tenant_id}")

    def bootstrap_accounts(self, tenant_id: str) -> dict:
        self._guard()
        return self.client.post(f"/dev/tenants/{tenant_id}/bootstrap-accounts")
