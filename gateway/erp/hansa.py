"""
Hansa ERP client over its REST register API.

Queries are GET /api/{company}/{register}?sort=..&range=..&fields=.. and
answer JSON envelopes; writes are form-encoded POSTs of set_field.* and
set_row_field.N.* pairs answered with an XML fragment carrying the new
record's SerNr or an <error code=".."> element.
"""

import logging
import re
from typing import Any, Optional

import httpx

from gateway.config import HansaSettings
from gateway.engine.errors import ErpError
from gateway.engine.retry import with_retry
from gateway.erp.base import (
    ErpClient,
    ErpClientRecord,
    ErpReceiptRecord,
    InstallmentRecord,
    InvoiceRecord,
    OpenInvoiceRecord,
    register_rows,
)
from gateway.models.charge import ReceiptRecord

logger = logging.getLogger("payment_gateway.erp")

INVOICE_FIELDS = "SerNr,OfficialSerNr,PayDeal,InvDate,PayDate,Sum4,OKFlag,OrderNr,CustOrdNr,RefStr"
RECEIPT_FIELDS = "SerNr,TransDate,CurPayVal,InvoiceNr,RecVal,PayDate,CustCode,stp,Person,RefStr,Comment,PayMode"
RECEIPT_DETAIL_FIELDS = "SerNr,CurPayVal,TransDate,PayMode,CustCode,InvoiceNr,InvoiceOfficialSerNr,RecVal,CustName"

# "Amount too high" warning: the receipt is frequently stored anyway.
ERROR_AMOUNT_TOO_HIGH = "20878"

_SER_NR = re.compile(r"<SerNr[^>]*>([^<]+)</SerNr>")
_ERROR_CODE = re.compile(r"<error[^>]*\bcode=[\"']([^\"']+)[\"']")
_ERROR_TEXT = re.compile(r"<error[^>]*>(.*?)</error>", re.S)


def parse_write_reply(xml: str) -> tuple[Optional[str], Optional[str], str]:
    """Return (ser_nr, error_code, error_text) from a Hansa write reply."""
    match = _SER_NR.search(xml)
    if match:
        return match.group(1).strip(), None, ""
    code = _ERROR_CODE.search(xml)
    if code:
        text = _ERROR_TEXT.search(xml)
        message = re.sub(r"<[^>]+>", "", text.group(1)).strip() if text else ""
        return None, code.group(1), message
    return None, None, ""


def receipt_form(receipt: ReceiptRecord) -> dict[str, str]:
    """Form fields for an IPVc write, header first, then one row per line."""
    form = {
        "set_field.TransDate": receipt.transaction_date,
        "set_field.RegDate": receipt.transaction_date,
        "set_field.PayMode": receipt.pay_mode,
        "set_field.RecNumber": receipt.reference,
        "set_field.OKFlag": receipt.ok_flag,
    }
    if receipt.comment:
        form["set_field.Comment"] = receipt.comment
    for i, line in enumerate(receipt.lines):
        form[f"set_row_field.{i}.InvoiceNr"] = line.invoice_number
        form[f"set_row_field.{i}.RecVal"] = f"{line.amount:.2f}"
        form[f"set_row_field.{i}.PayDate"] = receipt.transaction_date
        form[f"set_row_field.{i}.Stp"] = line.stp
    return form


class HansaClient(ErpClient):
    def __init__(self, http: httpx.AsyncClient, config: HansaSettings, retry_delay: float = 1.0):
        self._http = http
        self._config = config
        self._retry_delay = retry_delay

    def _auth(self) -> Optional[httpx.BasicAuth]:
        if self._config.use_basic_auth and self._config.username:
            return httpx.BasicAuth(self._config.username, self._config.password)
        return None

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        headers = {"Accept": "application/json", "User-Agent": "payment-gateway/0.1"}
        headers.update(kwargs.pop("headers", {}))
        auth = self._auth()
        if auth is not None:
            kwargs["auth"] = auth
        try:
            response = await self._http.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise ErpError(f"Hansa request timed out: {url}", retriable=True) from e
        except httpx.HTTPError as e:
            raise ErpError(f"Hansa request failed: {e}", retriable=True) from e

        if response.status_code >= 500:
            raise ErpError(f"Hansa unavailable ({response.status_code})", code=str(response.status_code), retriable=True)
        if response.status_code >= 400:
            raise ErpError(
                f"Hansa rejected the request ({response.status_code}): {response.text[:300]}",
                code=str(response.status_code),
            )
        return response

    async def _query(self, register: str, company_code: Optional[str], params: dict[str, str]) -> list[dict[str, Any]]:
        url = self._config.register_url(company_code or self._config.company_code, register)

        async def fetch() -> list[dict[str, Any]]:
            response = await self._request("GET", url, params=params)
            try:
                payload = response.json()
            except ValueError as e:
                raise ErpError(f"Hansa returned a non-JSON body for {register}") from e
            return register_rows(payload, register)

        return await with_retry(fetch, base_delay=self._retry_delay)

    async def list_clients(self, company_code: Optional[str] = None) -> list[ErpClientRecord]:
        rows = await self._query("CUVc", company_code, {"fields": "Code,Name,Mobile,eMail,VATNr,Closed"})
        return [ErpClientRecord.from_wire(r) for r in rows]

    async def list_invoices(self, client_code: str, company_code: Optional[str] = None) -> list[InvoiceRecord]:
        rows = await self._query(
            "IVVc",
            company_code,
            {"sort": "CustCode", "range": client_code, "fields": INVOICE_FIELDS, "filter.OKFlag": "1"},
        )
        return [InvoiceRecord.from_wire(r) for r in rows]

    async def list_open_invoices(
        self, client_code: str, company_code: Optional[str] = None
    ) -> list[OpenInvoiceRecord]:
        rows = await self._query(
            "ARVc", company_code, {"sort": "CustCode", "range": client_code, "fields": "InvoiceNr,BookRVal"}
        )
        return [OpenInvoiceRecord.from_wire(r) for r in rows]

    async def list_installments(
        self, client_code: str, company_code: Optional[str] = None
    ) -> list[InstallmentRecord]:
        rows = await self._query(
            "ARInstallVc", company_code, {"sort": "CustCode", "range": client_code, "fields": "DueDate,BookRVal"}
        )
        return [InstallmentRecord.from_wire(r) for r in rows]

    async def list_receipts(
        self,
        start_date: str,
        end_date: str,
        client_code: Optional[str] = None,
        company_code: Optional[str] = None,
        pay_mode: Optional[str] = None,
    ) -> list[ErpReceiptRecord]:
        params = {
            "sort": "TransDate",
            "range": f"{start_date}:{end_date}",
            "fields": RECEIPT_FIELDS,
            "filter.OKFlag": "1",
        }
        if client_code:
            params["filter.CustCode"] = client_code
        if pay_mode:
            params["filter.PayMode"] = pay_mode
        rows = await self._query("IPVc", company_code, params)
        return [ErpReceiptRecord.from_wire(r) for r in rows]

    async def get_receipt(self, receipt_number: str, company_code: Optional[str] = None) -> Optional[ErpReceiptRecord]:
        rows = await self._query(
            "IPVc",
            company_code,
            {"sort": "SerNr", "range": receipt_number, "fields": RECEIPT_DETAIL_FIELDS},
        )
        receipts = [ErpReceiptRecord.from_wire(r) for r in rows]
        return next((r for r in receipts if r.ser_nr == receipt_number), None)

    async def find_receipt(self, invoice_number: str, transaction_date: str, company_code: str) -> Optional[str]:
        rows = await self._query(
            "IPVc",
            company_code,
            {"sort": "TransDate", "range": transaction_date, "fields": "SerNr,InvoiceNr"},
        )
        for receipt in (ErpReceiptRecord.from_wire(r) for r in rows):
            if any(row.invoice_nr == invoice_number for row in receipt.rows):
                return receipt.ser_nr
        return None

    async def create_receipt(self, receipt: ReceiptRecord) -> str:
        if not receipt.lines:
            raise ErpError("A receipt needs at least one invoice line")

        url = self._config.register_url(receipt.company_code, "IPVc")
        response = await self._request(
            "POST",
            url,
            data=receipt_form(receipt),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        ser_nr, error_code, error_text = parse_write_reply(response.text)
        if ser_nr:
            logger.info(
                "Receipt %s written for ref=%s (%d lines, %s)",
                ser_nr,
                receipt.reference,
                len(receipt.lines),
                receipt.total,
            )
            return ser_nr

        if error_code == ERROR_AMOUNT_TOO_HIGH:
            first_invoice = receipt.lines[0].invoice_number
            logger.warning(
                "Hansa error %s on ref=%s; looking up receipt for invoice %s on %s",
                error_code,
                receipt.reference,
                first_invoice,
                receipt.transaction_date,
            )
            found = await self.find_receipt(first_invoice, receipt.transaction_date, receipt.company_code)
            if found:
                return found

        raise ErpError(
            f"Hansa did not accept receipt ref={receipt.reference}: {error_text or response.text[:300]}",
            code=error_code,
        )
