from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from decimal import Decimal
from typing import Optional
from ..db import get_conn
from ..deps import require_permission, get_current_user
from ..activity import write_audit
from ..settings_store import load_setting, save_setting
from ..validation import DocPrefix

router = APIRouter(prefix="/config", tags=["config"])


class NumerotationIn(BaseModel):
    prefixe_devis: Optional[DocPrefix] = None
    prefixe_ordre: Optional[DocPrefix] = None
    prefixe_facture: Optional[DocPrefix] = None
    prefixe_avoir: Optional[DocPrefix] = None
    prefixe_annulation: Optional[DocPrefix] = None


class TaxesIn(BaseModel):
    tva_taux: Optional[Decimal] = Field(default=None, ge=0, le=100)
    css_taux: Optional[Decimal] = Field(default=None, ge=0, le=100)
    tva_actif: Optional[bool] = None
    css_actif: Optional[bool] = None


@router.get("/numerotation", dependencies=[Depends(require_permission("config:read"))])
def get_numerotation():
    with get_conn() as conn:
        with conn.cursor() as cur:
            data = load_setting(cur, "numerotation")
            cur.execute(
                """
                SELECT doc_type, year, next_no, updated_at
                FROM document_sequences
                ORDER BY year DESC, doc_type
                """
            )
            return {"numerotation": data, "sequences": cur.fetchall()}


@router.put("/numerotation", dependencies=[Depends(require_permission("config:write"))])
def update_numerotation(data: NumerotationIn, user=Depends(get_current_user)):
    patch = data.model_dump(exclude_none=True)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                current = load_setting(cur, "numerotation", for_update=True)
                current.update(patch)
                save_setting(cur, "numerotation", current)
                write_audit(
                    cur,
                    user_id=user["user_id"],
                    action="config_numerotation_update",
                    entity_type="configuration",
                    details=patch,
                )
                return {"numerotation": current}


@router.get("/taxes", dependencies=[Depends(require_permission("config:read"))])
def get_taxes():
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"taxes": load_setting(cur, "taxes")}


@router.put("/taxes", dependencies=[Depends(require_permission("config:write"))])
def update_taxes(data: TaxesIn, user=Depends(get_current_user)):
    patch = data.model_dump(exclude_none=True)
    # Stored as JSON numbers.
    for k in ("tva_taux", "css_taux"):
        if k in patch:
            patch[k] = float(patch[k])
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                current = load_setting(cur, "taxes", for_update=True)
                current.update(patch)
                save_setting(cur, "taxes", current)
                write_audit(
                    cur,
                    user_id=user["user_id"],
                    action="config_taxes_update",
                    entity_type="configuration",
                    details=patch,
                )
                return {"taxes": current}
