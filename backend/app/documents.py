from datetime import date
from decimal import Decimal
from typing import Annotated, List, Optional

from fastapi import HTTPException
from pydantic import AfterValidator, BaseModel, Field

from .totals import item_amount, q2
from .validation import Categorie, RemiseType


# Document families. Child tables are `<child>_<suffix>` and reference the parent via `fk`.
KINDS = {
    "devis": {
        "table": "devis",
        "fk": "devis_id",
        "suffix": "devis",
        "label": "quote",
        "draft_status": "brouillon",
        "cancelled_status": "annule",
    },
    "ordre": {
        "table": "ordres_travail",
        "fk": "ordre_id",
        "suffix": "ordres",
        "label": "work order",
        "draft_status": "en_cours",
        "cancelled_status": "annule",
    },
    "facture": {
        "table": "factures",
        "fk": "facture_id",
        "suffix": "factures",
        "label": "invoice",
        "draft_status": "brouillon",
        "cancelled_status": "annulee",
    },
}

# Scalar columns copied on duplicate/convert and accepted on create/modify.
COMMON_FIELDS = (
    "client_id",
    "categorie",
    "type_operation",
    "navire",
    "numero_bl",
    "remise_type",
    "remise_valeur",
    "exonere_tva",
    "exonere_css",
    "notes",
)
EXTRA_FIELDS = {
    "devis": ("date_validite",),
    "ordre": ("devis_id",),
    "facture": ("ordre_id", "date_echeance"),
}

# Columns declared NOT NULL: an explicit null in an update leaves them unchanged.
REQUIRED_FIELDS = {"client_id", "categorie", "remise_type", "remise_valeur", "exonere_tva", "exonere_css"}

# Quantities and unit prices are stored as numeric(.., 2); round before computing line amounts.
Decimal2 = Annotated[Decimal, Field(ge=0), AfterValidator(q2)]


class LigneIn(BaseModel):
    type_operation: Optional[str] = None
    description: str = ""
    lieu_depart: Optional[str] = None
    lieu_arrivee: Optional[str] = None
    date_debut: Optional[date] = None
    date_fin: Optional[date] = None
    quantite: Decimal2 = Decimal("1")
    prix_unitaire: Decimal2 = Decimal("0")


class OperationIn(BaseModel):
    type_operation: Optional[str] = None
    description: Optional[str] = None
    lieu_depart: Optional[str] = None
    lieu_arrivee: Optional[str] = None
    date_debut: Optional[date] = None
    date_fin: Optional[date] = None
    quantite: Decimal2 = Decimal("1")
    prix_unitaire: Decimal2 = Decimal("0")


class ConteneurIn(BaseModel):
    numero: str = Field(min_length=1, max_length=20)
    type: Optional[str] = None
    taille: Optional[str] = None
    description: Optional[str] = None
    prix_unitaire: Decimal2 = Decimal("0")
    operations: List[OperationIn] = []


class LotIn(BaseModel):
    numero_lot: Optional[str] = None
    designation: Optional[str] = None
    description: Optional[str] = None
    poids: Optional[Decimal] = Field(default=None, ge=0)
    volume: Optional[Decimal] = Field(default=None, ge=0)
    quantite: Decimal2 = Decimal("1")
    prix_unitaire: Decimal2 = Decimal("0")


def doc_kind(kind: str) -> dict:
    k = KINDS.get(kind)
    if not k:
        raise ValueError(f"unknown document kind: {kind}")
    return k


def fetch_document(cur, kind: str, doc_id, *, for_update: bool = False, include_deleted: bool = False) -> dict:
    k = doc_kind(kind)
    cur.execute(
        f"""
        SELECT *
        FROM {k["table"]}
        WHERE id = %s
        {"" if include_deleted else "AND deleted_at IS NULL"}
        {"FOR UPDATE" if for_update else ""}
        """,
        (doc_id,),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail=f"{k['label']} not found")
    return row


def reste_a_payer(doc: dict) -> Decimal:
    ttc = Decimal(str(doc.get("montant_ttc") or 0))
    paye = Decimal(str(doc.get("montant_paye") or 0))
    return max(ttc - paye, Decimal("0"))


def insert_children(cur, kind: str, doc_id, *, lignes=None, conteneurs=None, lots=None):
    k = doc_kind(kind)
    sfx = k["suffix"]
    for position, raw in enumerate(lignes or []):
        l = LigneIn.model_validate(raw)
        cur.execute(
            f"""
            INSERT INTO lignes_{sfx}
              (id, {k["fk"]}, position, type_operation, description, lieu_depart, lieu_arrivee,
               date_debut, date_fin, quantite, prix_unitaire, montant_ht)
            VALUES
              (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                doc_id,
                position,
                l.type_operation,
                l.description,
                l.lieu_depart,
                l.lieu_arrivee,
                l.date_debut,
                l.date_fin,
                l.quantite,
                l.prix_unitaire,
                q2(item_amount(l)),
            ),
        )
    for position, raw in enumerate(conteneurs or []):
        c = ConteneurIn.model_validate(raw)
        cur.execute(
            f"""
            INSERT INTO conteneurs_{sfx}
              (id, {k["fk"]}, position, numero, type, taille, description, prix_unitaire)
            VALUES
              (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (doc_id, position, c.numero, c.type, c.taille, c.description, c.prix_unitaire),
        )
        conteneur_id = cur.fetchone()["id"]
        for op_position, op in enumerate(c.operations):
            cur.execute(
                f"""
                INSERT INTO operations_conteneurs_{sfx}
                  (id, conteneur_id, position, type_operation, description, lieu_depart, lieu_arrivee,
                   date_debut, date_fin, quantite, prix_unitaire, prix_total)
                VALUES
                  (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    conteneur_id,
                    op_position,
                    op.type_operation,
                    op.description,
                    op.lieu_depart,
                    op.lieu_arrivee,
                    op.date_debut,
                    op.date_fin,
                    op.quantite,
                    op.prix_unitaire,
                    q2(item_amount(op)),
                ),
            )
    for position, raw in enumerate(lots or []):
        lot = LotIn.model_validate(raw)
        cur.execute(
            f"""
            INSERT INTO lots_{sfx}
              (id, {k["fk"]}, position, numero_lot, designation, description, poids, volume,
               quantite, prix_unitaire, prix_total)
            VALUES
              (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                doc_id,
                position,
                lot.numero_lot,
                lot.designation,
                lot.description,
                lot.poids,
                lot.volume,
                lot.quantite,
                lot.prix_unitaire,
                q2(item_amount(lot)),
            ),
        )


def replace_children(cur, kind: str, doc_id, *, lignes=None, conteneurs=None, lots=None):
    """
    Replace whole child collections. A collection passed as None is left untouched;
    an empty list clears it. Container operations go with their container (ON DELETE CASCADE).
    """
    k = doc_kind(kind)
    sfx = k["suffix"]
    if lignes is not None:
        cur.execute(f"DELETE FROM lignes_{sfx} WHERE {k['fk']} = %s", (doc_id,))
    if conteneurs is not None:
        cur.execute(f"DELETE FROM conteneurs_{sfx} WHERE {k['fk']} = %s", (doc_id,))
    if lots is not None:
        cur.execute(f"DELETE FROM lots_{sfx} WHERE {k['fk']} = %s", (doc_id,))
    insert_children(cur, kind, doc_id, lignes=lignes, conteneurs=conteneurs, lots=lots)


def load_children(cur, kind: str, doc_id) -> dict:
    k = doc_kind(kind)
    sfx = k["suffix"]
    cur.execute(
        f"""
        SELECT id, type_operation, description, lieu_depart, lieu_arrivee,
               date_debut, date_fin, quantite, prix_unitaire, montant_ht
        FROM lignes_{sfx}
        WHERE {k["fk"]} = %s
        ORDER BY position, id
        """,
        (doc_id,),
    )
    lignes = cur.fetchall()
    cur.execute(
        f"""
        SELECT id, numero, type, taille, description, prix_unitaire
        FROM conteneurs_{sfx}
        WHERE {k["fk"]} = %s
        ORDER BY position, id
        """,
        (doc_id,),
    )
    conteneurs = [dict(c, operations=[]) for c in cur.fetchall()]
    if conteneurs:
        cur.execute(
            f"""
            SELECT id, conteneur_id, type_operation, description, lieu_depart, lieu_arrivee,
                   date_debut, date_fin, quantite, prix_unitaire, prix_total
            FROM operations_conteneurs_{sfx}
            WHERE conteneur_id = ANY(%s)
            ORDER BY position, id
            """,
            ([c["id"] for c in conteneurs],),
        )
        by_id = {str(c["id"]): c for c in conteneurs}
        for op in cur.fetchall():
            parent = by_id.get(str(op["conteneur_id"]))
            if parent is not None:
                parent["operations"].append(op)
    cur.execute(
        f"""
        SELECT id, numero_lot, designation, description, poids, volume,
               quantite, prix_unitaire, prix_total
        FROM lots_{sfx}
        WHERE {k["fk"]} = %s
        ORDER BY position, id
        """,
        (doc_id,),
    )
    lots = cur.fetchall()
    return {"lignes": lignes, "conteneurs": conteneurs, "lots": lots}


def children_payload(children: dict) -> dict:
    """Strip identities so loaded children can be re-inserted on another document."""
    def _strip(row, drop=("id", "conteneur_id", "montant_ht", "prix_total")):
        return {k: v for k, v in row.items() if k not in drop}

    return {
        "lignes": [_strip(l) for l in children.get("lignes") or []],
        "conteneurs": [
            dict(_strip(c), operations=[_strip(op) for op in c.get("operations") or []])
            for c in children.get("conteneurs") or []
        ],
        "lots": [_strip(l) for l in children.get("lots") or []],
    }


def document_detail(cur, kind: str, doc_id) -> dict:
    doc = fetch_document(cur, kind, doc_id)
    out = dict(doc)
    out.update(load_children(cur, kind, doc_id))
    if kind in {"ordre", "facture"}:
        out["reste_a_payer"] = reste_a_payer(doc)
    return out


class DocumentIn(BaseModel):
    client_id: str
    date_creation: Optional[date] = None
    categorie: Categorie = "conteneurs"
    type_operation: Optional[str] = None
    navire: Optional[str] = None
    numero_bl: Optional[str] = None
    remise_type: RemiseType = "none"
    remise_valeur: Decimal = Field(default=Decimal("0"), ge=0)
    exonere_tva: bool = False
    exonere_css: bool = False
    notes: Optional[str] = None
    lignes: List[LigneIn] = []
    conteneurs: List[ConteneurIn] = []
    lots: List[LotIn] = []


class DocumentUpdate(BaseModel):
    # Only fields explicitly sent are applied (model_dump(exclude_unset=True)).
    client_id: Optional[str] = None
    categorie: Optional[Categorie] = None
    type_operation: Optional[str] = None
    navire: Optional[str] = None
    numero_bl: Optional[str] = None
    remise_type: Optional[RemiseType] = None
    remise_valeur: Optional[Decimal] = Field(default=None, ge=0)
    exonere_tva: Optional[bool] = None
    exonere_css: Optional[bool] = None
    notes: Optional[str] = None
    lignes: Optional[List[LigneIn]] = None
    conteneurs: Optional[List[ConteneurIn]] = None
    lots: Optional[List[LotIn]] = None
