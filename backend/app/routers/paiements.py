from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from datetime import date
from decimal import Decimal
from typing import List, Optional

from ..db import get_conn
from ..deps import require_permission, get_current_user
from ..payments import cancel_payment, create_global_payment, create_payment, list_payments
from ..validation import ModePaiement, PayableKind

router = APIRouter(prefix="/paiements", tags=["paiements"])


class PaiementIn(BaseModel):
    facture_id: Optional[str] = None
    ordre_id: Optional[str] = None
    montant: Decimal = Field(gt=0)
    date_paiement: Optional[date] = None
    mode_paiement: ModePaiement = "especes"
    reference: Optional[str] = None
    banque_id: Optional[str] = None
    numero_cheque: Optional[str] = None
    notes: Optional[str] = None


class GlobalTarget(BaseModel):
    type: PayableKind
    id: str
    # Requested amount for this document; defaults to its remaining balance.
    montant: Optional[Decimal] = Field(default=None, gt=0)


class PaiementGlobalIn(BaseModel):
    documents: List[GlobalTarget]
    montant: Decimal = Field(gt=0)
    date_paiement: Optional[date] = None
    mode_paiement: ModePaiement = "especes"
    reference: Optional[str] = None
    banque_id: Optional[str] = None
    numero_cheque: Optional[str] = None
    notes: Optional[str] = None


@router.get("", dependencies=[Depends(require_permission("paiements:read"))])
def list_paiements(
    facture_id: Optional[str] = None,
    ordre_id: Optional[str] = None,
    client_id: Optional[str] = None,
    mode_paiement: Optional[ModePaiement] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    limit: int = 100,
    offset: int = 0,
):
    with get_conn() as conn:
        with conn.cursor() as cur:
            rows = list_payments(
                cur,
                facture_id=facture_id,
                ordre_id=ordre_id,
                client_id=client_id,
                mode_paiement=mode_paiement,
                start_date=start_date,
                end_date=end_date,
                limit=limit,
                offset=offset,
            )
            return {"paiements": rows}


@router.post("", dependencies=[Depends(require_permission("paiements:write"))])
def create(data: PaiementIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                return {"paiement": create_payment(cur, data.model_dump(), user_id=user["user_id"])}


@router.post("/global", dependencies=[Depends(require_permission("paiements:write"))])
def create_global(data: PaiementGlobalIn, user=Depends(get_current_user)):
    if not data.documents:
        raise HTTPException(status_code=400, detail="no documents to pay")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                return create_global_payment(cur, data.model_dump(), user_id=user["user_id"])


@router.delete("/{paiement_id}", dependencies=[Depends(require_permission("paiements:write"))])
def cancel(paiement_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                return {"paiement": cancel_payment(cur, paiement_id, user_id=user["user_id"])}
