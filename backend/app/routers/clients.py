from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from decimal import Decimal
from typing import Literal, Optional

from ..db import get_conn
from ..deps import require_permission, get_current_user
from ..activity import write_audit
from ..client_balance import client_credit_balance, recompute_client_balance

router = APIRouter(prefix="/clients", tags=["clients"])


class ClientIn(BaseModel):
    nom: str = Field(min_length=1, max_length=200)
    email: Optional[str] = None
    telephone: Optional[str] = None
    adresse: Optional[str] = None
    ville: Optional[str] = None
    pays: str = "Gabon"
    type: Literal["Particulier", "Entreprise"] = "Entreprise"
    rccm: Optional[str] = None
    nif: Optional[str] = None
    limite_credit: Decimal = Field(default=Decimal("0"), ge=0)
    notes: Optional[str] = None


class ClientUpdate(BaseModel):
    # `solde` is derived from invoices and never written here.
    nom: Optional[str] = None
    email: Optional[str] = None
    telephone: Optional[str] = None
    adresse: Optional[str] = None
    ville: Optional[str] = None
    pays: Optional[str] = None
    type: Optional[Literal["Particulier", "Entreprise"]] = None
    rccm: Optional[str] = None
    nif: Optional[str] = None
    limite_credit: Optional[Decimal] = Field(default=None, ge=0)
    notes: Optional[str] = None


@router.get("", dependencies=[Depends(require_permission("clients:read"))])
def list_clients(q: str = "", limit: int = 100, offset: int = 0):
    qq = (q or "").strip()
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, nom, email, telephone, ville, type, solde, limite_credit, created_at
                FROM clients
                WHERE deleted_at IS NULL
                  AND (%s = '' OR nom ILIKE %s OR email ILIKE %s OR nif ILIKE %s)
                ORDER BY nom
                LIMIT %s OFFSET %s
                """,
                (qq, f"%{qq}%", f"%{qq}%", f"%{qq}%", max(1, min(500, limit)), max(0, offset)),
            )
            return {"clients": cur.fetchall()}


@router.get("/{client_id}", dependencies=[Depends(require_permission("clients:read"))])
def get_client(client_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM clients WHERE id = %s AND deleted_at IS NULL", (client_id,))
            client = cur.fetchone()
            if not client:
                raise HTTPException(status_code=404, detail="client not found")
            cur.execute(
                """
                SELECT COUNT(*) AS nombre,
                       COALESCE(SUM(montant_ttc), 0) AS total_ttc,
                       COALESCE(SUM(montant_paye), 0) AS total_paye
                FROM factures
                WHERE client_id = %s AND statut <> 'annulee' AND deleted_at IS NULL
                """,
                (client_id,),
            )
            factures = cur.fetchone()
            return {
                "client": client,
                "factures": factures,
                "solde_avoirs": client_credit_balance(cur, client_id),
            }


@router.post("", dependencies=[Depends(require_permission("clients:write"))])
def create_client(data: ClientIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO clients
                      (id, nom, email, telephone, adresse, ville, pays, type, rccm, nif, limite_credit, notes)
                    VALUES
                      (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        data.nom.strip(),
                        data.email,
                        data.telephone,
                        data.adresse,
                        data.ville,
                        data.pays,
                        data.type,
                        data.rccm,
                        data.nif,
                        data.limite_credit,
                        data.notes,
                    ),
                )
                client_id = cur.fetchone()["id"]
                write_audit(
                    cur,
                    user_id=user["user_id"],
                    action="client_create",
                    entity_type="client",
                    entity_id=client_id,
                    details={"nom": data.nom.strip()},
                )
                return {"id": client_id}


@router.patch("/{client_id}", dependencies=[Depends(require_permission("clients:write"))])
def update_client(client_id: str, data: ClientUpdate):
    patch = data.model_dump(exclude_none=True)
    if not patch:
        return {"ok": True}
    fields = []
    params = []
    for k, v in patch.items():
        fields.append(f"{k} = %s")
        params.append(v)
    params.append(client_id)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE clients
                    SET {', '.join(fields)}, updated_at = now()
                    WHERE id = %s AND deleted_at IS NULL
                    RETURNING id
                    """,
                    params,
                )
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="client not found")
                return {"ok": True}


@router.delete("/{client_id}", dependencies=[Depends(require_permission("clients:write"))])
def delete_client(client_id: str):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT 1 FROM factures
                    WHERE client_id = %s AND deleted_at IS NULL AND statut <> 'annulee'
                    LIMIT 1
                    """,
                    (client_id,),
                )
                if cur.fetchone():
                    raise HTTPException(status_code=409, detail="client has active invoices")
                cur.execute(
                    "UPDATE clients SET deleted_at = now(), updated_at = now() WHERE id = %s AND deleted_at IS NULL RETURNING id",
                    (client_id,),
                )
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="client not found")
                return {"ok": True}


@router.post("/{client_id}/recompute-solde", dependencies=[Depends(require_permission("clients:write"))])
def recompute_solde(client_id: str):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                solde = recompute_client_balance(cur, client_id)
                if solde is None:
                    raise HTTPException(status_code=404, detail="client not found")
                return {"id": client_id, "solde": solde}
