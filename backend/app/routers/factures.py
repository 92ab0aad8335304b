from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from datetime import date
from typing import Optional

from ..db import get_conn
from ..deps import require_permission, get_current_user
from ..documents import DocumentIn, DocumentUpdate, document_detail
from ..lifecycle import (
    create_document,
    duplicate_document,
    list_documents,
    modify_document,
    send_facture,
    soft_delete_document,
    validate_facture,
)
from ..cancellations import cancel_invoice
from ..payments import list_payments
from ..validation import FactureStatus

router = APIRouter(prefix="/factures", tags=["factures"])


class FactureIn(DocumentIn):
    date_echeance: Optional[date] = None


class FactureUpdate(DocumentUpdate):
    date_echeance: Optional[date] = None


class FactureCancelIn(BaseModel):
    motif: str = Field(min_length=1, max_length=500)
    generer_avoir: bool = False


@router.get("", dependencies=[Depends(require_permission("factures:read"))])
def list_factures(
    client_id: Optional[str] = None,
    statut: Optional[FactureStatus] = None,
    q: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
):
    with get_conn() as conn:
        with conn.cursor() as cur:
            rows = list_documents(cur, "facture", client_id=client_id, statut=statut, q=q, limit=limit, offset=offset)
            return {"factures": rows}


@router.get("/{facture_id}", dependencies=[Depends(require_permission("factures:read"))])
def get_facture(facture_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            facture = document_detail(cur, "facture", facture_id)
            facture["paiements"] = list_payments(cur, facture_id=facture_id, limit=500)
            return {"facture": facture}


@router.post("", dependencies=[Depends(require_permission("factures:write"))])
def create_facture(data: FactureIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                facture_id = create_document(cur, "facture", data.model_dump(), user_id=user["user_id"])
                return {"facture": document_detail(cur, "facture", facture_id)}


@router.patch("/{facture_id}", dependencies=[Depends(require_permission("factures:write"))])
def update_facture(facture_id: str, data: FactureUpdate):
    patch = data.model_dump(exclude_unset=True)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                modify_document(cur, "facture", facture_id, patch)
                return {"facture": document_detail(cur, "facture", facture_id)}


@router.delete("/{facture_id}", dependencies=[Depends(require_permission("factures:write"))])
def delete_facture(facture_id: str):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                soft_delete_document(cur, "facture", facture_id)
                return {"ok": True}


@router.post("/{facture_id}/duplicate", dependencies=[Depends(require_permission("factures:write"))])
def duplicate_facture(facture_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                new_id = duplicate_document(cur, "facture", facture_id, user_id=user["user_id"])
                return {"facture": document_detail(cur, "facture", new_id)}


@router.post("/{facture_id}/validate", dependencies=[Depends(require_permission("factures:write"))])
def validate(facture_id: str):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                return validate_facture(cur, facture_id)


@router.post("/{facture_id}/send", dependencies=[Depends(require_permission("factures:write"))])
def send(facture_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                return send_facture(cur, facture_id, user_id=user["user_id"])


@router.post("/{facture_id}/cancel", dependencies=[Depends(require_permission("annulations:write"))])
def cancel(facture_id: str, data: FactureCancelIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                annulation = cancel_invoice(
                    cur,
                    facture_id,
                    data.motif.strip(),
                    issue_credit=data.generer_avoir,
                    user_id=user["user_id"],
                )
                return {"annulation": annulation}
