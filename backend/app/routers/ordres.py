from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import Optional

from ..db import get_conn
from ..deps import require_permission, get_current_user
from ..documents import DocumentIn, DocumentUpdate, document_detail
from ..lifecycle import (
    convert_ordre_to_facture,
    create_document,
    duplicate_document,
    list_documents,
    modify_document,
    soft_delete_document,
)
from ..cancellations import cancel_work_order
from ..payments import list_payments
from ..validation import OrdreStatus

router = APIRouter(prefix="/ordres", tags=["ordres"])


class OrdreCancelIn(BaseModel):
    motif: str = Field(min_length=1, max_length=500)


@router.get("", dependencies=[Depends(require_permission("ordres:read"))])
def list_ordres(
    client_id: Optional[str] = None,
    statut: Optional[OrdreStatus] = None,
    q: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"ordres": list_documents(cur, "ordre", client_id=client_id, statut=statut, q=q, limit=limit, offset=offset)}


@router.get("/{ordre_id}", dependencies=[Depends(require_permission("ordres:read"))])
def get_ordre(ordre_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            ordre = document_detail(cur, "ordre", ordre_id)
            ordre["paiements"] = list_payments(cur, ordre_id=ordre_id, limit=500)
            return {"ordre": ordre}


@router.post("", dependencies=[Depends(require_permission("ordres:write"))])
def create_ordre(data: DocumentIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                ordre_id = create_document(cur, "ordre", data.model_dump(), user_id=user["user_id"])
                return {"ordre": document_detail(cur, "ordre", ordre_id)}


@router.patch("/{ordre_id}", dependencies=[Depends(require_permission("ordres:write"))])
def update_ordre(ordre_id: str, data: DocumentUpdate):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                modify_document(cur, "ordre", ordre_id, data.model_dump(exclude_unset=True))
                return {"ordre": document_detail(cur, "ordre", ordre_id)}


@router.delete("/{ordre_id}", dependencies=[Depends(require_permission("ordres:write"))])
def delete_ordre(ordre_id: str):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                soft_delete_document(cur, "ordre", ordre_id)
                return {"ok": True}


@router.post("/{ordre_id}/duplicate", dependencies=[Depends(require_permission("ordres:write"))])
def duplicate_ordre(ordre_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                new_id = duplicate_document(cur, "ordre", ordre_id, user_id=user["user_id"])
                return {"ordre": document_detail(cur, "ordre", new_id)}


@router.post("/{ordre_id}/convert", dependencies=[Depends(require_permission("factures:write"))])
def convert_to_facture(ordre_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                facture_id = convert_ordre_to_facture(cur, ordre_id, user_id=user["user_id"])
                return {"facture": document_detail(cur, "facture", facture_id)}


@router.post("/{ordre_id}/cancel", dependencies=[Depends(require_permission("annulations:write"))])
def cancel(ordre_id: str, data: OrdreCancelIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                return {"annulation": cancel_work_order(cur, ordre_id, data.motif.strip(), user_id=user["user_id"])}
