"""
ACH proof-of-payment endpoints.

POST  /ach/proofs             Upload a transfer proof (multipart).
GET   /ach/proofs             List proofs, newest first.
GET   /ach/proofs/{id}/file   Download the stored file.
PATCH /ach/proofs/{id}        Mark a pending proof processed or rejected.
"""

from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import Response
from pydantic import BaseModel

from gateway.api.deps import GatewayServices, get_services, http_error
from gateway.engine.errors import GatewayError
from gateway.models.enums import ACHProofStatus
from gateway.models.records import ACHProof

router = APIRouter(prefix="/ach", tags=["ach"])


class ProofOut(BaseModel):
    id: int
    client_code: str
    invoice_number: str
    company_code: str
    transaction_number: str
    file_name: str
    content_type: str
    file_size: int
    amount: Decimal
    transaction_date: Optional[str]
    registered_at: Optional[str]
    status: str
    notes: Optional[str]
    registered_by: Optional[str]
    processed_at: Optional[str]
    rejection_reason: Optional[str]
    erp_receipt_number: Optional[str] = None


class TransitionIn(BaseModel):
    status: ACHProofStatus
    rejection_reason: Optional[str] = None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _proof_out(p: ACHProof, erp_receipt_number: Optional[str] = None) -> ProofOut:
    return ProofOut(
        id=p.id,
        client_code=p.client_code,
        invoice_number=p.invoice_number,
        company_code=p.company_code,
        transaction_number=p.transaction_number,
        file_name=p.file_name,
        content_type=p.content_type,
        file_size=p.file_size,
        amount=p.amount,
        transaction_date=_iso(p.transaction_date),
        registered_at=_iso(p.registered_at),
        status=p.status,
        notes=p.notes,
        registered_by=p.registered_by,
        processed_at=_iso(p.processed_at),
        rejection_reason=p.rejection_reason,
        erp_receipt_number=erp_receipt_number,
    )


@router.post("/proofs", response_model=ProofOut, status_code=201)
async def upload_proof(
    client_code: str = Form(...),
    invoice_number: str = Form(...),
    company_code: str = Form(...),
    transaction_number: str = Form(...),
    amount: Decimal = Form(...),
    transaction_date: date = Form(...),
    notes: Optional[str] = Form(None),
    registered_by: Optional[str] = Form(None),
    file: UploadFile = File(...),
    services: GatewayServices = Depends(get_services),
):
    """Store the proof and post it to the ERP as an unapproved receipt."""
    content = await file.read()
    try:
        proof = await services.ach.register(
            client_code=client_code,
            invoice_number=invoice_number,
            company_code=company_code,
            transaction_number=transaction_number,
            amount=amount,
            transaction_date=datetime.combine(transaction_date, time(), tzinfo=timezone.utc),
            file_name=file.filename or "comprobante",
            content_type=file.content_type or "",
            content=content,
            notes=notes,
            registered_by=registered_by,
        )
    except GatewayError as e:
        raise http_error(e)

    receipt_number = await services.ach.post_receipt(proof)
    return _proof_out(proof, receipt_number)


@router.get("/proofs", response_model=list[ProofOut])
async def list_proofs(
    client_code: Optional[str] = Query(None),
    company_code: Optional[str] = Query(None),
    status: Optional[ACHProofStatus] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    limit: int = Query(100, le=1000),
    services: GatewayServices = Depends(get_services),
):
    proofs = await services.ach.list_proofs(client_code, company_code, status, date_from, date_to, limit)
    return [_proof_out(p) for p in proofs]


@router.get("/proofs/{proof_id}/file")
async def download_proof(proof_id: int, services: GatewayServices = Depends(get_services)):
    proof = await services.ach.get(proof_id)
    if not proof:
        raise HTTPException(status_code=404, detail=f"ACH proof {proof_id} not found")
    return Response(
        content=proof.proof,
        media_type=proof.content_type,
        headers={"Content-Disposition": f'inline; filename="{proof.file_name}"'},
    )


@router.patch("/proofs/{proof_id}", response_model=ProofOut)
async def transition_proof(
    proof_id: int,
    body: TransitionIn,
    services: GatewayServices = Depends(get_services),
):
    try:
        proof = await services.ach.transition(proof_id, body.status, body.rejection_reason)
    except GatewayError as e:
        raise http_error(e)
    if proof is None:
        raise HTTPException(status_code=404, detail=f"ACH proof {proof_id} not found")
    return _proof_out(proof)
