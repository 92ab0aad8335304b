from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from datetime import date
from decimal import Decimal
from typing import Optional

from ..db import get_conn
from ..deps import require_permission, get_current_user
from ..cancellations import (
    cancellation_stats,
    client_cancellation_history,
    generate_credit_note,
    list_cancellations,
    refund,
    remaining_credit,
)
from ..validation import DocKind, ModePaiement

router = APIRouter(prefix="/annulations", tags=["annulations"])


class RemboursementIn(BaseModel):
    montant: Decimal = Field(gt=0)
    mode_paiement: ModePaiement
    banque_id: Optional[str] = None
    reference: Optional[str] = None
    notes: Optional[str] = None


@router.get("", dependencies=[Depends(require_permission("annulations:read"))])
def list_annulations(
    type: Optional[DocKind] = None,
    client_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    limit: int = 100,
    offset: int = 0,
):
    with get_conn() as conn:
        with conn.cursor() as cur:
            rows = list_cancellations(
                cur,
                type=type,
                client_id=client_id,
                start_date=start_date,
                end_date=end_date,
                limit=limit,
                offset=offset,
            )
            return {"annulations": rows}


@router.get("/stats", dependencies=[Depends(require_permission("annulations:read"))])
def stats(start_date: Optional[date] = None, end_date: Optional[date] = None):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return cancellation_stats(cur, start_date=start_date, end_date=end_date)


@router.get("/clients/{client_id}", dependencies=[Depends(require_permission("annulations:read"))])
def client_history(client_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return client_cancellation_history(cur, client_id)


@router.get("/{annulation_id}", dependencies=[Depends(require_permission("annulations:read"))])
def get_annulation(annulation_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM annulations WHERE id = %s", (annulation_id,))
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="cancellation not found")
            return {"annulation": dict(row, credit_restant=remaining_credit(row))}


@router.post("/{annulation_id}/avoir", dependencies=[Depends(require_permission("annulations:write"))])
def create_avoir(annulation_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                return {"annulation": generate_credit_note(cur, annulation_id, user_id=user["user_id"])}


@router.post("/{annulation_id}/rembourser", dependencies=[Depends(require_permission("annulations:write"))])
def rembourser(annulation_id: str, data: RemboursementIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                row = refund(
                    cur,
                    annulation_id,
                    data.montant,
                    mode_paiement=data.mode_paiement,
                    banque_id=data.banque_id,
                    reference=data.reference,
                    notes=data.notes,
                    user_id=user["user_id"],
                )
                return {"annulation": row}
