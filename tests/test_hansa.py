"""Tests for the Hansa ERP client and the local client cache."""

from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest

from gateway.config import HansaSettings
from gateway.engine.errors import ErpError
from gateway.erp.clients import ClientDirectory, normalize_phone
from gateway.erp.hansa import HansaClient, parse_write_reply, receipt_form
from gateway.models.charge import ReceiptLine, ReceiptRecord

CONFIG = HansaSettings(base_url="http://hansa.test", web_port=8080, company_code="2", username="api", password="pw")

OK_REPLY = "<?xml version='1.0' encoding='UTF-8' standalone='yes'?><data><IPVc><SerNr>100234</SerNr></IPVc></data>"
TOO_HIGH_REPLY = (
    "<?xml version='1.0' encoding='UTF-8' standalone='yes'?>"
    "<error code=\"20878\" description=\"Monto Demasiado Alto\"><field>RecVal</field></error>"
)


def _receipt(lines=(("INV-1", "100.00"), ("INV-2", "50.00")), ok_flag="1"):
    return ReceiptRecord(
        company_code="2",
        client_code="C1",
        pay_mode="PP",
        reference="CAP-1",
        transaction_date="2026-10-19",
        lines=[ReceiptLine(n, Decimal(a)) for n, a in lines],
        comment="Pago PayPal: CAP-1",
        ok_flag=ok_flag,
    )


def _client(handler):
    return HansaClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)), CONFIG, retry_delay=0)


def test_receipt_form_has_header_and_one_row_per_line():
    form = receipt_form(_receipt())

    assert form["set_field.TransDate"] == "2026-10-19"
    assert form["set_field.RegDate"] == "2026-10-19"
    assert form["set_field.PayMode"] == "PP"
    assert form["set_field.RecNumber"] == "CAP-1"
    assert form["set_field.OKFlag"] == "1"
    assert form["set_row_field.0.InvoiceNr"] == "INV-1"
    assert form["set_row_field.0.RecVal"] == "100.00"
    assert form["set_row_field.1.InvoiceNr"] == "INV-2"
    assert form["set_row_field.1.RecVal"] == "50.00"
    assert form["set_row_field.1.PayDate"] == "2026-10-19"
    assert form["set_row_field.1.Stp"] == "1"
    assert "set_row_field.2.InvoiceNr" not in form


def test_duplicate_invoices_stay_separate_lines():
    form = receipt_form(_receipt(lines=(("INV-1", "60.00"), ("INV-1", "40.00"))))
    assert form["set_row_field.0.InvoiceNr"] == form["set_row_field.1.InvoiceNr"] == "INV-1"
    assert form["set_row_field.0.RecVal"] == "60.00"
    assert form["set_row_field.1.RecVal"] == "40.00"


def test_parse_write_reply():
    assert parse_write_reply(OK_REPLY) == ("100234", None, "")
    ser_nr, code, _ = parse_write_reply(TOO_HIGH_REPLY)
    assert ser_nr is None
    assert code == "20878"
    assert parse_write_reply("garbage") == (None, None, "")


@pytest.mark.asyncio
async def test_create_receipt_posts_form_and_returns_ser_nr():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, text=OK_REPLY)

    ser_nr = await _client(handler).create_receipt(_receipt())

    assert ser_nr == "100234"
    assert len(seen) == 1
    request = seen[0]
    assert request.method == "POST"
    assert str(request.url) == "http://hansa.test:8080/api/2/IPVc"
    assert request.headers["Authorization"].startswith("Basic ")
    form = parse_qs(request.content.decode())
    assert form["set_row_field.1.InvoiceNr"] == ["INV-2"]
    assert form["set_field.Comment"] == ["Pago PayPal: CAP-1"]


@pytest.mark.asyncio
async def test_amount_too_high_looks_the_receipt_up():
    def handler(request):
        if request.method == "POST":
            return httpx.Response(200, text=TOO_HIGH_REPLY)
        assert request.url.params["range"] == "2026-10-19"
        return httpx.Response(200, json={"data": {"IPVc": [
            {"SerNr": "100111", "rows": [{"InvoiceNr": "INV-9"}]},
            {"SerNr": "100240", "rows": [{"InvoiceNr": "INV-1"}, {"InvoiceNr": "INV-2"}]},
        ]}})

    assert await _client(handler).create_receipt(_receipt()) == "100240"


@pytest.mark.asyncio
async def test_amount_too_high_without_a_match_is_an_error():
    def handler(request):
        if request.method == "POST":
            return httpx.Response(200, text=TOO_HIGH_REPLY)
        return httpx.Response(200, json={"data": {"IPVc": []}})

    with pytest.raises(ErpError) as exc:
        await _client(handler).create_receipt(_receipt())
    assert exc.value.code == "20878"


@pytest.mark.asyncio
async def test_receipt_writes_are_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503, text="down")

    with pytest.raises(ErpError) as exc:
        await _client(handler).create_receipt(_receipt())
    assert exc.value.retriable
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_queries_are_retried_on_transient_errors():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(502, text="bad gateway")
        return httpx.Response(200, json={"data": {"@register": "IVVc", "IVVc": [
            {"@url": "/api/2/IVVc/1001", "SerNr": "1001", "Sum4": "1,250.50", "InvDate": "2026-09-30"},
        ]}})

    invoices = await _client(handler).list_invoices("C1")

    assert len(calls) == 3
    assert calls[0].url.params["range"] == "C1"
    assert calls[0].url.params["filter.OKFlag"] == "1"
    assert invoices[0].ser_nr == "1001"
    assert invoices[0].total == Decimal("1250.50")


@pytest.mark.asyncio
async def test_single_row_envelope_and_rejected_query():
    def single(request):
        return httpx.Response(200, json={"data": {"ARVc": {"InvoiceNr": "1001", "BookRVal": "75.00"}}})

    open_invoices = await _client(single).list_open_invoices("C1")
    assert open_invoices[0].invoice_nr == "1001"
    assert open_invoices[0].balance == Decimal("75.00")

    def forbidden(request):
        return httpx.Response(403, text="no access")

    with pytest.raises(ErpError) as exc:
        await _client(forbidden).list_installments("C1")
    assert exc.value.code == "403"
    assert not exc.value.retriable


@pytest.mark.asyncio
async def test_get_receipt_returns_the_exact_match():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"data": {"IPVc": [
            {"SerNr": "1002340", "CurPayVal": "5.00", "rows": []},
            {"SerNr": "100234", "CurPayVal": "1,150.00", "TransDate": "2026-10-19", "PayMode": "PP", "CustCode": "C1",
             "rows": {"InvoiceNr": "INV-1", "RecVal": "1,150.00", "CustName": "Ana Pérez",
                      "InvoiceOfficialSerNr": "FE-1"}},
        ]}})

    receipt = await _client(handler).get_receipt("100234", "3")

    assert str(seen[0].url).startswith("http://hansa.test:8080/api/3/IPVc")
    assert seen[0].url.params["sort"] == "SerNr"
    assert seen[0].url.params["range"] == "100234"
    assert receipt.total == Decimal("1150.00")
    assert receipt.cust_code == "C1"
    assert receipt.customer_name == "Ana Pérez"
    assert receipt.rows[0].official_invoice_nr == "FE-1"

    empty = _client(lambda request: httpx.Response(200, json={"data": {"IPVc": []}}))
    assert await empty.get_receipt("100234") is None


def test_normalize_phone():
    assert normalize_phone("+507 6000-1234") == "60001234"
    assert normalize_phone("6000-1234") == "60001234"
    assert normalize_phone(None) == ""


@pytest.mark.asyncio
async def test_client_sync_and_search(session_factory):
    def handler(request):
        return httpx.Response(200, json={"data": {"CUVc": [
            {"Code": "C1", "Name": "Ana Pérez", "VATNr": "8-123-456", "eMail": "ana@x.com; otra@x.com",
             "Mobile": "+507 6000-1234", "Closed": "0"},
            {"Code": "C2", "Name": "Cerrado SA", "VATNr": "9-9", "eMail": "", "Mobile": "", "Closed": "1"},
        ]}})

    directory = ClientDirectory(session_factory, _client(handler))

    assert await directory.sync_clients() == 2
    assert await directory.sync_clients() == 0  # within the sync interval
    assert await directory.sync_clients(force=True) == 2

    found = await directory.search_clients(query="ana")
    assert [c.code for c in found] == ["C1"]
    assert [c.code for c in await directory.search_clients(mobile="60001234")] == ["C1"]
    assert await directory.search_clients(vat_nr="9-9") == []
    assert [c.code for c in await directory.search_clients(vat_nr="9-9", include_closed=True)] == ["C2"]
    assert await directory.client_email("C1") == "ana@x.com"
    assert await directory.client_email("C2") is None
