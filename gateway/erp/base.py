"""
ERP interface and typed register records.

Hansa answers queries with JSON envelopes of the form
``{"data": {"@register": "IVVc", ..., "IVVc": [{"@url": ..., "SerNr": ...}]}}``.
Each register gets one dataclass and one from_wire() mapping; raw dicts
never leave the adapter.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from gateway.models.charge import ReceiptRecord


def wire_decimal(value: Any) -> Decimal:
    """Parse a Hansa amount string; blanks and garbage read as zero."""
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value).replace(",", ""))
    except InvalidOperation:
        return Decimal("0")


def _s(row: dict[str, Any], key: str) -> str:
    value = row.get(key)
    return "" if value is None else str(value)


def register_rows(payload: dict[str, Any], register: str) -> list[dict[str, Any]]:
    """Pull the row list for a register out of a Hansa query envelope."""
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict):
        return []
    rows = data.get(register)
    if isinstance(rows, dict):
        return [rows]
    if not isinstance(rows, list):
        return []
    return [r for r in rows if isinstance(r, dict)]


@dataclass
class ErpClientRecord:
    """CUVc"""

    code: str
    name: str = ""
    vat_nr: str = ""
    email: str = ""
    mobile: str = ""
    closed: str = "0"

    @classmethod
    def from_wire(cls, row: dict[str, Any]) -> "ErpClientRecord":
        return cls(
            code=_s(row, "Code"),
            name=_s(row, "Name"),
            vat_nr=_s(row, "VATNr") or _s(row, "VatNr"),
            email=_s(row, "eMail"),
            mobile=_s(row, "Mobile"),
            closed=_s(row, "Closed") or "0",
        )


@dataclass
class InvoiceRecord:
    """IVVc"""

    ser_nr: str
    official_ser_nr: str = ""
    pay_deal: str = ""
    inv_date: str = ""
    pay_date: str = ""
    total: Decimal = Decimal("0")  # Sum4
    ok_flag: str = ""
    order_nr: str = ""
    cust_ord_nr: str = ""
    ref_str: str = ""

    @classmethod
    def from_wire(cls, row: dict[str, Any]) -> "InvoiceRecord":
        return cls(
            ser_nr=_s(row, "SerNr"),
            official_ser_nr=_s(row, "OfficialSerNr"),
            pay_deal=_s(row, "PayDeal"),
            inv_date=_s(row, "InvDate"),
            pay_date=_s(row, "PayDate"),
            total=wire_decimal(row.get("Sum4")),
            ok_flag=_s(row, "OKFlag"),
            order_nr=_s(row, "OrderNr"),
            cust_ord_nr=_s(row, "CustOrdNr"),
            ref_str=_s(row, "RefStr"),
        )


@dataclass
class OpenInvoiceRecord:
    """ARVc: open balance per invoice."""

    invoice_nr: str
    balance: Decimal

    @classmethod
    def from_wire(cls, row: dict[str, Any]) -> "OpenInvoiceRecord":
        return cls(invoice_nr=_s(row, "InvoiceNr"), balance=wire_decimal(row.get("BookRVal")))


@dataclass
class InstallmentRecord:
    """ARInstallVc"""

    due_date: str
    balance: Decimal

    @classmethod
    def from_wire(cls, row: dict[str, Any]) -> "InstallmentRecord":
        return cls(due_date=_s(row, "DueDate"), balance=wire_decimal(row.get("BookRVal")))


@dataclass
class ReceiptRowRecord:
    invoice_nr: str
    cust_name: str = ""
    amount: Decimal = Decimal("0")
    official_invoice_nr: str = ""

    @classmethod
    def from_wire(cls, row: dict[str, Any]) -> "ReceiptRowRecord":
        return cls(
            invoice_nr=_s(row, "InvoiceNr"),
            cust_name=_s(row, "CustName"),
            amount=wire_decimal(row.get("RecVal")),
            official_invoice_nr=_s(row, "InvoiceOfficialSerNr"),
        )


@dataclass
class ErpReceiptRecord:
    """IPVc"""

    ser_nr: str
    total: Decimal = Decimal("0")
    trans_date: str = ""
    pay_mode: str = ""
    cust_code: str = ""
    rows: list[ReceiptRowRecord] = field(default_factory=list)

    @property
    def customer_name(self) -> str:
        return next((r.cust_name for r in self.rows if r.cust_name), "")

    @classmethod
    def from_wire(cls, row: dict[str, Any]) -> "ErpReceiptRecord":
        raw_rows = row.get("rows") or []
        if isinstance(raw_rows, dict):
            raw_rows = [raw_rows]
        return cls(
            ser_nr=_s(row, "SerNr"),
            total=wire_decimal(row.get("CurPayVal")),
            trans_date=_s(row, "TransDate"),
            pay_mode=_s(row, "PayMode"),
            cust_code=_s(row, "CustCode"),
            rows=[ReceiptRowRecord.from_wire(r) for r in raw_rows if isinstance(r, dict)],
        )


class ErpClient(ABC):
    """
    Query/write interface to the ERP.

    Reads may be retried; create_receipt is a remote commit that cannot be
    rolled back and must never be retried blindly.
    """

    @abstractmethod
    async def list_clients(self, company_code: Optional[str] = None) -> list[ErpClientRecord]:
        ...

    @abstractmethod
    async def list_invoices(self, client_code: str, company_code: Optional[str] = None) -> list[InvoiceRecord]:
        ...

    @abstractmethod
    async def list_open_invoices(
        self, client_code: str, company_code: Optional[str] = None
    ) -> list[OpenInvoiceRecord]:
        ...

    @abstractmethod
    async def list_installments(
        self, client_code: str, company_code: Optional[str] = None
    ) -> list[InstallmentRecord]:
        ...

    @abstractmethod
    async def list_receipts(
        self,
        start_date: str,
        end_date: str,
        client_code: Optional[str] = None,
        company_code: Optional[str] = None,
        pay_mode: Optional[str] = None,
    ) -> list[ErpReceiptRecord]:
        ...

    @abstractmethod
    async def get_receipt(self, receipt_number: str, company_code: Optional[str] = None) -> Optional[ErpReceiptRecord]:
        """One receipt with its invoice rows, or None if the ERP has no such number."""
        ...

    @abstractmethod
    async def find_receipt(self, invoice_number: str, transaction_date: str, company_code: str) -> Optional[str]:
        """SerNr of the receipt dated transaction_date that pays invoice_number, if any."""
        ...

    @abstractmethod
    async def create_receipt(self, receipt: ReceiptRecord) -> str:
        """
        Write one receipt with its invoice lines.

        Returns:
            The ERP receipt number (SerNr).

        Raises:
            ErpError: The ERP refused the write or could not be reached.
        """
        ...
