"""
Client, invoice and receipt endpoints.

POST /clients/sync                      Refresh the local client cache from the ERP.
GET  /clients                           Search the local client cache.
GET  /clients/{code}                    One cached client.
GET  /clients/{code}/invoices           ERP invoices (verification grant required).
GET  /clients/{code}/open-invoices      ERP open balances (grant required).
GET  /clients/{code}/installments       ERP installments (grant required).
GET  /clients/{code}/receipts           ERP receipts in a date range (grant required).
"""

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from gateway.api.deps import GatewayServices, get_services, http_error
from gateway.engine.errors import GatewayError
from gateway.models.enums import QueryType
from gateway.models.records import LocalClient

router = APIRouter(prefix="/clients", tags=["clients"])


class ClientOut(BaseModel):
    code: str
    name: str
    vat_nr: str
    email: str
    mobile: str
    closed: bool


def _client_out(c: LocalClient) -> ClientOut:
    return ClientOut(
        code=c.code,
        name=c.name,
        vat_nr=c.vat_nr,
        email=c.email,
        mobile=c.mobile,
        closed=c.closed == "1",
    )


async def _require_grant(services: GatewayServices, email: str, client_code: str, query_type: QueryType) -> None:
    if not await services.verification.has_grant(email, client_code, query_type):
        raise HTTPException(status_code=403, detail="A verified code is required for this query")


@router.post("/sync")
async def sync_clients(force: bool = Query(False), services: GatewayServices = Depends(get_services)):
    try:
        written = await services.clients.sync_clients(force=force)
    except GatewayError as e:
        raise http_error(e)
    last = await services.clients.last_synced_at()
    return {"written": written, "last_synced_at": last.isoformat() if last else None}


@router.get("", response_model=list[ClientOut])
async def search_clients(
    q: Optional[str] = Query(None, description="Name or code fragment"),
    vat_nr: Optional[str] = Query(None),
    mobile: Optional[str] = Query(None),
    include_closed: bool = Query(False),
    limit: int = Query(50, le=500),
    services: GatewayServices = Depends(get_services),
):
    clients = await services.clients.search_clients(q, vat_nr, mobile, include_closed, limit)
    return [_client_out(c) for c in clients]


@router.get("/{code}", response_model=ClientOut)
async def get_client(code: str, services: GatewayServices = Depends(get_services)):
    client = await services.clients.get_client(code)
    if not client:
        raise HTTPException(status_code=404, detail=f"Client {code} not found")
    return _client_out(client)


@router.get("/{code}/invoices")
async def list_invoices(
    code: str,
    email: str = Query(...),
    company_code: Optional[str] = Query(None),
    services: GatewayServices = Depends(get_services),
):
    await _require_grant(services, email, code, QueryType.INVOICES)
    try:
        invoices = await services.erp.list_invoices(code, company_code)
    except GatewayError as e:
        raise http_error(e)
    return [asdict(i) for i in invoices]


@router.get("/{code}/open-invoices")
async def list_open_invoices(
    code: str,
    email: str = Query(...),
    company_code: Optional[str] = Query(None),
    services: GatewayServices = Depends(get_services),
):
    await _require_grant(services, email, code, QueryType.INVOICES)
    try:
        invoices = await services.erp.list_open_invoices(code, company_code)
    except GatewayError as e:
        raise http_error(e)
    return [asdict(i) for i in invoices]


@router.get("/{code}/installments")
async def list_installments(
    code: str,
    email: str = Query(...),
    company_code: Optional[str] = Query(None),
    services: GatewayServices = Depends(get_services),
):
    await _require_grant(services, email, code, QueryType.INVOICES)
    try:
        installments = await services.erp.list_installments(code, company_code)
    except GatewayError as e:
        raise http_error(e)
    return [asdict(i) for i in installments]


@router.get("/{code}/receipts")
async def list_receipts(
    code: str,
    email: str = Query(...),
    start_date: str = Query(..., description="YYYY-MM-DD"),
    end_date: str = Query(..., description="YYYY-MM-DD"),
    company_code: Optional[str] = Query(None),
    pay_mode: Optional[str] = Query(None),
    services: GatewayServices = Depends(get_services),
):
    await _require_grant(services, email, code, QueryType.RECEIPTS)
    try:
        receipts = await services.erp.list_receipts(start_date, end_date, code, company_code, pay_mode)
    except GatewayError as e:
        raise http_error(e)
    return [asdict(r) for r in receipts]
