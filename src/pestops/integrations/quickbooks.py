"""QuickBooks Online accounting client."""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any
from urllib.parse import quote

import httpx

from pestops.exceptions import ProviderRequestError
from pestops.integrations.base import ProviderClient
from pestops.integrations.credentials import Provider
from pestops.integrations.tokens import AccessGranted, TokenLifecycleManager

logger = logging.getLogger(__name__)

MAX_QUERY_RESULTS = 1000


@dataclass(frozen=True)
class InvoiceLine:
    amount: float
    description: str | None = None
    item_id: str | None = None
    quantity: float = 1.0
    unit_price: float | None = None


@dataclass(frozen=True)
class InvoiceDraft:
    """An invoice created in the app, ready to push to QuickBooks."""

    customer_id: str
    lines: list[InvoiceLine]
    doc_number: str | None = None
    due_date: date | None = None
    memo: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "InvoiceDraft":
        """Build from an ``invoice_created`` event payload.

        Raises:
            ValueError: when the payload has no customer or no amount.
        """
        customer_id = payload.get("quickbooksCustomerId") or payload.get("customerId")
        if not customer_id:
            raise ValueError("invoice payload has no customerId")

        lines = [
            InvoiceLine(
                amount=float(item.get("amount") or 0)
                or float(item.get("quantity", 1)) * float(item.get("unitPrice", 0)),
                description=item.get("description"),
                item_id=item.get("quickbooksItemId") or item.get("itemId"),
                quantity=float(item.get("quantity", 1)),
                unit_price=(
                    float(item["unitPrice"]) if item.get("unitPrice") is not None else None
                ),
            )
            for item in payload.get("lineItems") or []
        ]
        if not lines:
            total = payload.get("total", payload.get("amount"))
            if total is None:
                raise ValueError("invoice payload has neither lineItems nor total")
            lines = [
                InvoiceLine(
                    amount=float(total),
                    description=payload.get("description") or payload.get("title"),
                )
            ]

        due_date = payload.get("dueDate")
        return cls(
            customer_id=str(customer_id),
            lines=lines,
            doc_number=payload.get("invoiceNumber"),
            due_date=date.fromisoformat(due_date[:10]) if due_date else None,
            memo=payload.get("notes"),
        )

    def to_wire(self) -> dict[str, Any]:
        wire_lines = []
        for line in self.lines:
            detail: dict[str, Any] = {"Qty": line.quantity}
            if line.unit_price is not None:
                detail["UnitPrice"] = line.unit_price
            if line.item_id:
                detail["ItemRef"] = {"value": line.item_id}
            wire_line: dict[str, Any] = {
                "Amount": round(line.amount, 2),
                "DetailType": "SalesItemLineDetail",
                "SalesItemLineDetail": detail,
            }
            if line.description:
                wire_line["Description"] = line.description
            wire_lines.append(wire_line)

        invoice: dict[str, Any] = {
            "CustomerRef": {"value": self.customer_id},
            "Line": wire_lines,
        }
        if self.doc_number:
            invoice["DocNumber"] = self.doc_number
        if self.due_date:
            invoice["DueDate"] = self.due_date.isoformat()
        if self.memo:
            invoice["CustomerMemo"] = {"value": self.memo}
        return invoice


@dataclass(frozen=True)
class TimeEntry:
    """Hours worked by an employee on one day."""

    employee_id: str
    txn_date: date
    hours: float
    customer_id: str | None = None
    description: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any], occurred_at: datetime) -> "TimeEntry":
        """Build from a time entry or clock-out payload.

        Raises:
            ValueError: when the employee or hours are missing.
        """
        employee_id = payload.get("quickbooksEmployeeId") or payload.get("employeeId")
        if not employee_id:
            raise ValueError("time entry payload has no employeeId")
        hours = payload.get("hours", payload.get("totalHours"))
        if hours is None:
            raise ValueError("time entry payload has no hours")
        raw_date = payload.get("date")
        return cls(
            employee_id=str(employee_id),
            txn_date=date.fromisoformat(raw_date[:10]) if raw_date else occurred_at.date(),
            hours=float(hours),
            customer_id=payload.get("quickbooksCustomerId") or payload.get("customerId"),
            description=payload.get("notes") or payload.get("description"),
        )

    def to_wire(self) -> dict[str, Any]:
        whole_hours = int(self.hours)
        minutes = round((self.hours - whole_hours) * 60)
        if minutes == 60:
            whole_hours, minutes = whole_hours + 1, 0
        activity: dict[str, Any] = {
            "NameOf": "Employee",
            "EmployeeRef": {"value": self.employee_id},
            "TxnDate": self.txn_date.isoformat(),
            "Hours": whole_hours,
            "Minutes": minutes,
        }
        if self.customer_id:
            activity["CustomerRef"] = {"value": str(self.customer_id)}
        if self.description:
            activity["Description"] = self.description
        return activity


class QuickBooksClient(ProviderClient):
    """Requests against ``/v3/company/{realmId}``. Holds no tokens."""

    provider = Provider.QUICKBOOKS

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        tokens: TokenLifecycleManager,
        api_base_url: str = "https://quickbooks.api.intuit.com/v3",
        minor_version: int = 65,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(http_client, tokens, timeout)
        self.api_base_url = api_base_url.rstrip("/")
        self.minor_version = minor_version

    def _url(self, grant: AccessGranted, path: str) -> str:
        if not grant.realm_id:
            raise ProviderRequestError(
                "QuickBooks credential has no realm id", self.provider.value
            )
        path = path.lstrip("/").replace("{realm_id}", grant.realm_id)
        return f"{self.api_base_url}/company/{grant.realm_id}/{path}"

    def _error_message(self, response: httpx.Response) -> str:
        try:
            errors = response.json()["Fault"]["Error"]
            return "; ".join(
                f"{e.get('Message')}: {e.get('Detail')}" for e in errors
            )
        except (ValueError, KeyError, TypeError):
            return super()._error_message(response)

    def _params(self, extra: dict[str, Any] | None = None) -> dict[str, Any]:
        return {"minorversion": self.minor_version, **(extra or {})}

    def _write_params(self, request_id: str | None) -> dict[str, Any]:
        # QuickBooks replays the original response for a repeated requestid
        return self._params({"requestid": request_id} if request_id else None)

    async def query(self, user_id: str, entity: str, where: str | None = None) -> list[dict[str, Any]]:
        """Run ``SELECT * FROM <entity>`` and return the entity list."""
        statement = f"SELECT * FROM {entity}"
        if where:
            statement += f" WHERE {where}"
        statement += f" MAXRESULTS {MAX_QUERY_RESULTS}"
        body = await self._request(
            "GET", user_id, "query", params=self._params({"query": statement})
        )
        return body.get("QueryResponse", {}).get(entity, [])

    async def get_entity(self, user_id: str, entity: str, entity_id: str) -> dict[str, Any]:
        """Read one record, e.g. ``get_entity(user, "Customer", "58")``."""
        path = f"{entity.lower()}/{quote(entity_id, safe='')}"
        body = await self._request("GET", user_id, path, params=self._params())
        return body.get(entity, {})

    async def get_company_info(self, user_id: str) -> dict[str, Any]:
        body = await self._request(
            "GET", user_id, "companyinfo/{realm_id}", params=self._params()
        )
        return body.get("CompanyInfo", {})

    async def list_customers(self, user_id: str) -> list[dict[str, Any]]:
        return await self.query(user_id, "Customer")

    async def list_items(self, user_id: str) -> list[dict[str, Any]]:
        return await self.query(user_id, "Item")

    async def list_invoices(self, user_id: str) -> list[dict[str, Any]]:
        return await self.query(user_id, "Invoice")

    async def create_invoice(
        self, user_id: str, invoice: InvoiceDraft, request_id: str | None = None
    ) -> dict[str, Any]:
        """Create an invoice. Retries must reuse ``request_id`` to avoid duplicates."""
        body = await self._request(
            "POST",
            user_id,
            "invoice",
            params=self._write_params(request_id),
            json=invoice.to_wire(),
        )
        created = body.get("Invoice", {})
        logger.info(f"Created QuickBooks invoice {created.get('Id')} for user {user_id}")
        return created

    async def create_time_activity(
        self, user_id: str, entry: TimeEntry, request_id: str | None = None
    ) -> dict[str, Any]:
        body = await self._request(
            "POST",
            user_id,
            "timeactivity",
            params=self._write_params(request_id),
            json=entry.to_wire(),
        )
        created = body.get("TimeActivity", {})
        logger.info(
            f"Created QuickBooks time activity {created.get('Id')} for employee "
            f"{entry.employee_id}"
        )
        return created
