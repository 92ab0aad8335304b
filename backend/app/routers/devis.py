from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from datetime import date
from typing import Literal, Optional

from ..db import get_conn
from ..deps import require_permission, get_current_user
from ..documents import DocumentIn, DocumentUpdate, document_detail
from ..lifecycle import (
    change_devis_status,
    convert_devis_to_ordre,
    create_document,
    duplicate_document,
    list_documents,
    modify_document,
    soft_delete_document,
)
from ..cancellations import cancel_quote
from ..validation import DevisStatus

router = APIRouter(prefix="/devis", tags=["devis"])


class DevisIn(DocumentIn):
    date_validite: Optional[date] = None
    # Used when date_validite is not given; clamped to 1..365.
    validite_jours: Optional[int] = None


class DevisUpdate(DocumentUpdate):
    date_validite: Optional[date] = None


class DevisStatusIn(BaseModel):
    statut: Literal["envoye", "accepte", "refuse", "expire"]


class DevisCancelIn(BaseModel):
    motif: str = Field(min_length=1, max_length=500)


@router.get("", dependencies=[Depends(require_permission("devis:read"))])
def list_devis(
    client_id: Optional[str] = None,
    statut: Optional[DevisStatus] = None,
    q: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"devis": list_documents(cur, "devis", client_id=client_id, statut=statut, q=q, limit=limit, offset=offset)}


@router.get("/{devis_id}", dependencies=[Depends(require_permission("devis:read"))])
def get_devis(devis_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"devis": document_detail(cur, "devis", devis_id)}


@router.post("", dependencies=[Depends(require_permission("devis:write"))])
def create_devis(data: DevisIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                devis_id = create_document(cur, "devis", data.model_dump(), user_id=user["user_id"])
                return {"devis": document_detail(cur, "devis", devis_id)}


@router.patch("/{devis_id}", dependencies=[Depends(require_permission("devis:write"))])
def update_devis(devis_id: str, data: DevisUpdate):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                modify_document(cur, "devis", devis_id, data.model_dump(exclude_unset=True))
                return {"devis": document_detail(cur, "devis", devis_id)}


@router.delete("/{devis_id}", dependencies=[Depends(require_permission("devis:write"))])
def delete_devis(devis_id: str):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                soft_delete_document(cur, "devis", devis_id)
                return {"ok": True}


@router.post("/{devis_id}/duplicate", dependencies=[Depends(require_permission("devis:write"))])
def duplicate(devis_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                new_id = duplicate_document(cur, "devis", devis_id, user_id=user["user_id"])
                return {"devis": document_detail(cur, "devis", new_id)}


@router.post("/{devis_id}/send", dependencies=[Depends(require_permission("devis:write"))])
def send(devis_id: str):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                return change_devis_status(cur, devis_id, "envoye")


@router.post("/{devis_id}/status", dependencies=[Depends(require_permission("devis:write"))])
def set_status(devis_id: str, data: DevisStatusIn):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                return change_devis_status(cur, devis_id, data.statut)


@router.post("/{devis_id}/convert", dependencies=[Depends(require_permission("ordres:write"))])
def convert_to_ordre(devis_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                ordre_id = convert_devis_to_ordre(cur, devis_id, user_id=user["user_id"])
                return {"ordre": document_detail(cur, "ordre", ordre_id)}


@router.post("/{devis_id}/cancel", dependencies=[Depends(require_permission("annulations:write"))])
def cancel(devis_id: str, data: DevisCancelIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                return {"annulation": cancel_quote(cur, devis_id, data.motif.strip(), user_id=user["user_id"])}
