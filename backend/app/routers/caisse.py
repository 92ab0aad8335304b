from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from datetime import date
from decimal import Decimal
from typing import Optional

from ..db import get_conn
from ..deps import require_permission, get_current_user
from ..activity import write_audit
from ..cash_ledger import drawer_balance, reconcile_banks, record_movement, require_bank, transfer
from ..logs import json_log
from ..validation import ModePaiement, MovementSource, MovementType

router = APIRouter(tags=["caisse"])


class BanqueIn(BaseModel):
    nom: str = Field(min_length=1, max_length=120)
    numero_compte: str = Field(min_length=1, max_length=60)
    rib: Optional[str] = None
    iban: Optional[str] = None
    swift: Optional[str] = None
    # Opening balance, booked as an entry movement so reconciliation stays exact.
    solde_initial: Decimal = Field(default=Decimal("0"), ge=0)
    actif: bool = True


class BanqueUpdate(BaseModel):
    # No `solde`: bank balances only move through cash movements.
    nom: Optional[str] = None
    numero_compte: Optional[str] = None
    rib: Optional[str] = None
    iban: Optional[str] = None
    swift: Optional[str] = None
    actif: Optional[bool] = None


class MouvementIn(BaseModel):
    type: MovementType
    montant: Decimal = Field(gt=0)
    description: str = Field(min_length=1, max_length=500)
    banque_id: Optional[str] = None
    date_mouvement: Optional[date] = None
    mode_paiement: Optional[ModePaiement] = None
    reference: Optional[str] = None
    categorie: Optional[str] = None
    beneficiaire: Optional[str] = None


class TransfertIn(BaseModel):
    montant: Decimal = Field(gt=0)
    # None means the cash drawer.
    from_banque_id: Optional[str] = None
    to_banque_id: Optional[str] = None
    description: Optional[str] = None
    reference: Optional[str] = None


@router.get("/banques", dependencies=[Depends(require_permission("caisse:read"))])
def list_banques(include_inactive: bool = False):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, nom, numero_compte, rib, iban, swift, solde, actif, created_at, updated_at
                FROM banques
                WHERE (%s OR actif = true)
                ORDER BY nom
                """,
                (include_inactive,),
            )
            return {"banques": cur.fetchall()}


@router.post("/banques", dependencies=[Depends(require_permission("caisse:write"))])
def create_banque(data: BanqueIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO banques (id, nom, numero_compte, rib, iban, swift, solde, actif)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, 0, %s)
                    RETURNING id
                    """,
                    (data.nom.strip(), data.numero_compte.strip(), data.rib, data.iban, data.swift, data.actif),
                )
                banque_id = cur.fetchone()["id"]
                if data.solde_initial > 0:
                    record_movement(
                        cur,
                        type="entree",
                        montant=data.solde_initial,
                        description=f"Solde initial {data.nom.strip()}",
                        banque_id=banque_id,
                        categorie="solde_initial",
                        user_id=user["user_id"],
                    )
                write_audit(
                    cur,
                    user_id=user["user_id"],
                    action="banque_create",
                    entity_type="banque",
                    entity_id=banque_id,
                    details=data.model_dump(),
                )
                return {"id": banque_id}


@router.patch("/banques/{banque_id}", dependencies=[Depends(require_permission("caisse:write"))])
def update_banque(banque_id: str, data: BanqueUpdate):
    patch = data.model_dump(exclude_none=True)
    if not patch:
        return {"ok": True}

    fields = []
    params = []
    for k, v in patch.items():
        fields.append(f"{k} = %s")
        params.append(v)
    params.append(banque_id)

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE banques
                    SET {', '.join(fields)}, updated_at = now()
                    WHERE id = %s
                    RETURNING id
                    """,
                    params,
                )
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="bank not found")
                return {"ok": True}


@router.post("/banques/{banque_id}/deactivate", dependencies=[Depends(require_permission("caisse:write"))])
def deactivate_banque(banque_id: str):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE banques SET actif = false, updated_at = now() WHERE id = %s RETURNING id",
                    (banque_id,),
                )
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="bank not found")
                return {"ok": True}


@router.get("/banques/rapprochement", dependencies=[Depends(require_permission("caisse:read"))])
def rapprochement():
    with get_conn() as conn:
        with conn.cursor() as cur:
            rows = reconcile_banks(cur)
            return {"banques": rows, "ok": all(r["ok"] for r in rows)}


@router.get("/caisse/mouvements", dependencies=[Depends(require_permission("caisse:read"))])
def list_mouvements(
    type: Optional[MovementType] = None,
    source: Optional[MovementSource] = None,
    banque_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    limit: int = 100,
    offset: int = 0,
):
    sql = """
        SELECT m.*, b.nom AS banque_nom, c.nom AS client_nom
        FROM mouvements_caisse m
        LEFT JOIN banques b ON b.id = m.banque_id
        LEFT JOIN clients c ON c.id = m.client_id
        WHERE 1=1
    """
    params: list = []
    for col, val in (("m.type", type), ("m.source", source), ("m.banque_id", banque_id)):
        if val:
            sql += f" AND {col} = %s"
            params.append(val)
    if start_date:
        sql += " AND m.date >= %s"
        params.append(start_date)
    if end_date:
        sql += " AND m.date <= %s"
        params.append(end_date)
    sql += " ORDER BY m.date DESC, m.created_at DESC LIMIT %s OFFSET %s"
    params.extend([max(1, min(500, limit)), max(0, offset)])
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, tuple(params))
            return {"mouvements": cur.fetchall()}


@router.post("/caisse/mouvements", dependencies=[Depends(require_permission("caisse:write"))])
def create_mouvement(data: MouvementIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                if data.banque_id:
                    require_bank(cur, data.banque_id)
                movement_id = record_movement(
                    cur,
                    type=data.type,
                    montant=data.montant,
                    description=data.description.strip(),
                    banque_id=data.banque_id,
                    mode_paiement=data.mode_paiement,
                    reference=data.reference,
                    categorie=data.categorie,
                    beneficiaire=data.beneficiaire,
                    movement_date=data.date_mouvement,
                    user_id=user["user_id"],
                )
                json_log("info", "caisse.mouvement", id=movement_id, type=data.type, montant=data.montant, banque_id=data.banque_id)
                return {"id": movement_id}


@router.post("/caisse/transferts", dependencies=[Depends(require_permission("caisse:write"))])
def create_transfert(data: TransfertIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                out = transfer(
                    cur,
                    montant=data.montant,
                    from_banque_id=data.from_banque_id,
                    to_banque_id=data.to_banque_id,
                    description=data.description,
                    reference=data.reference,
                    user_id=user["user_id"],
                )
                json_log("info", "caisse.transfert", montant=data.montant, source=data.from_banque_id, destination=data.to_banque_id)
                return out


@router.get("/caisse/solde", dependencies=[Depends(require_permission("caisse:read"))])
def solde_caisse():
    with get_conn() as conn:
        with conn.cursor() as cur:
            return drawer_balance(cur)
