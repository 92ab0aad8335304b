from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

from fastapi import HTTPException

from .activity import notify
from .client_balance import recompute_client_balance
from .config import settings
from .documents import (
    COMMON_FIELDS,
    EXTRA_FIELDS,
    REQUIRED_FIELDS,
    children_payload,
    doc_kind,
    fetch_document,
    insert_children,
    load_children,
    replace_children,
)
from .logs import json_log
from .numbering import next_document_no
from .totals import recompute_totals


# Statuses after which a document is frozen.
TERMINAL_STATUSES = {
    "devis": {"converti", "annule"},
    "ordre": {"facture", "annule"},
    "facture": {"annulee"},
}

DEVIS_TRANSITIONS = {
    "brouillon": {"envoye"},
    "envoye": {"accepte", "refuse", "expire"},
    "accepte": set(),
    "refuse": set(),
    "expire": set(),
}


def derive_facture_status(statut: str, montant_paye: Decimal, montant_ttc: Decimal) -> str:
    if montant_paye >= montant_ttc:
        return "payee"
    if montant_paye > 0:
        return "partiellement_payee"
    return statut


def derive_ordre_status(statut: str, montant_paye: Decimal, montant_ttc: Decimal) -> str:
    # An invoiced order keeps its status; settlement continues on the invoice.
    if montant_paye >= montant_ttc and statut != "facture":
        return "termine"
    return statut


def reversed_facture_status(statut: str, montant_paye: Decimal) -> str:
    if statut in {"payee", "partiellement_payee"}:
        return "partiellement_payee" if montant_paye > 0 else "validee"
    return statut


def reversed_ordre_status(statut: str, montant_paye: Decimal, montant_ttc: Decimal) -> str:
    if statut == "termine" and montant_paye < montant_ttc:
        return "en_cours"
    return statut


def clamp_validite_jours(v) -> int:
    try:
        n = int(v)
    except (TypeError, ValueError):
        n = settings.devis_validite_jours
    return max(1, min(365, n))


def _assert_client(cur, client_id):
    cur.execute("SELECT id, nom FROM clients WHERE id = %s AND deleted_at IS NULL", (client_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="client not found")
    return row


def _assert_mutable(kind: str, doc: dict):
    if doc["statut"] in TERMINAL_STATUSES[kind]:
        raise HTTPException(status_code=409, detail=f"{doc_kind(kind)['label']} is {doc['statut']}")


def create_document(cur, kind: str, data: dict, *, user_id=None) -> str:
    """
    Create a document with a fresh number, its children and computed totals.
    `data` holds the scalar fields plus optional `lignes`/`conteneurs`/`lots`.
    """
    k = doc_kind(kind)
    client = _assert_client(cur, data.get("client_id"))
    today = date.today()
    date_creation = data.get("date_creation") or today
    # Numbers carry the year they are issued in, even for back-dated documents.
    numero = next_document_no(cur, kind)

    cols = ["numero", "date_creation", "statut", "created_by"]
    vals = [numero, date_creation, data.get("statut") or k["draft_status"], user_id]
    for f in COMMON_FIELDS + EXTRA_FIELDS[kind]:
        if data.get(f) is not None:
            cols.append(f)
            vals.append(data[f])
    if kind == "devis" and data.get("date_validite") is None:
        cols.append("date_validite")
        vals.append(date_creation + timedelta(days=clamp_validite_jours(data.get("validite_jours"))))
    if kind == "facture" and data.get("date_echeance") is None:
        cols.append("date_echeance")
        vals.append(date_creation + timedelta(days=settings.facture_echeance_jours))

    cur.execute(
        f"""
        INSERT INTO {k["table"]} (id, {", ".join(cols)})
        VALUES (gen_random_uuid(), {", ".join(["%s"] * len(vals))})
        RETURNING id
        """,
        tuple(vals),
    )
    doc_id = cur.fetchone()["id"]
    insert_children(cur, kind, doc_id, lignes=data.get("lignes"), conteneurs=data.get("conteneurs"), lots=data.get("lots"))
    totals = recompute_totals(cur, kind, doc_id)

    if kind == "facture":
        recompute_client_balance(cur, client["id"])
        notify(
            cur,
            type="facture_creee",
            titre="Nouvelle facture",
            message=f"Facture {numero} creee pour {client['nom']} ({totals['montant_ttc']} FCFA)",
            entity_type="facture",
            entity_id=doc_id,
            user_id=user_id,
        )
    json_log("info", f"{kind}.created", id=doc_id, numero=numero, montant_ttc=totals["montant_ttc"])
    return doc_id


def modify_document(cur, kind: str, doc_id, data: dict) -> dict:
    """
    Apply scalar updates, replace any child collection present in `data`, then
    always recompute totals. `data` should only carry the keys the caller sent.
    """
    k = doc_kind(kind)
    doc = fetch_document(cur, kind, doc_id, for_update=True)
    _assert_mutable(kind, doc)

    new_client_id = data.get("client_id") or doc["client_id"]
    if str(new_client_id) != str(doc["client_id"]):
        _assert_client(cur, new_client_id)

    sets = []
    params = []
    for f in COMMON_FIELDS + EXTRA_FIELDS[kind]:
        if f not in data or f in {"devis_id", "ordre_id"}:
            continue
        if data[f] is None and f in REQUIRED_FIELDS:
            continue
        sets.append(f"{f} = %s")
        params.append(data[f])
    if sets:
        cur.execute(
            f"UPDATE {k['table']} SET {', '.join(sets)}, updated_at = now() WHERE id = %s",
            tuple(params) + (doc_id,),
        )

    replace_children(
        cur,
        kind,
        doc_id,
        lignes=data.get("lignes") if "lignes" in data else None,
        conteneurs=data.get("conteneurs") if "conteneurs" in data else None,
        lots=data.get("lots") if "lots" in data else None,
    )
    totals = recompute_totals(cur, kind, doc_id)

    if kind == "facture":
        recompute_client_balance(cur, new_client_id)
        if str(new_client_id) != str(doc["client_id"]):
            recompute_client_balance(cur, doc["client_id"])
    json_log("info", f"{kind}.modified", id=doc_id, numero=doc["numero"], montant_ttc=totals["montant_ttc"])
    return totals


def _copy_payload(cur, kind: str, doc: dict) -> dict:
    payload = {f: doc.get(f) for f in COMMON_FIELDS}
    payload.update(children_payload(load_children(cur, kind, doc["id"])))
    return payload


def duplicate_document(cur, kind: str, doc_id, *, user_id=None) -> str:
    doc = fetch_document(cur, kind, doc_id)
    payload = _copy_payload(cur, kind, doc)
    # Fresh number, draft status, nothing paid, no upstream link.
    payload["statut"] = doc_kind(kind)["draft_status"]
    new_id = create_document(cur, kind, payload, user_id=user_id)
    json_log("info", f"{kind}.duplicated", source_id=doc_id, id=new_id)
    return new_id


def convert_devis_to_ordre(cur, devis_id, *, user_id=None) -> str:
    devis = fetch_document(cur, "devis", devis_id, for_update=True)
    if devis["statut"] == "converti":
        raise HTTPException(status_code=409, detail="quote already converted")
    if devis["statut"] == "annule":
        raise HTTPException(status_code=409, detail="quote is cancelled")
    payload = _copy_payload(cur, "devis", devis)
    payload["devis_id"] = devis["id"]
    payload["statut"] = "en_cours"
    ordre_id = create_document(cur, "ordre", payload, user_id=user_id)
    cur.execute(
        "UPDATE devis SET statut = 'converti', updated_at = now() WHERE id = %s",
        (devis_id,),
    )
    json_log("info", "devis.converted", id=devis_id, ordre_id=ordre_id)
    return ordre_id


def convert_ordre_to_facture(cur, ordre_id, *, user_id=None) -> str:
    ordre = fetch_document(cur, "ordre", ordre_id, for_update=True)
    if ordre["statut"] == "facture":
        raise HTTPException(status_code=409, detail="work order already invoiced")
    if ordre["statut"] == "annule":
        raise HTTPException(status_code=409, detail="work order is cancelled")
    payload = _copy_payload(cur, "ordre", ordre)
    payload["ordre_id"] = ordre["id"]
    payload["statut"] = "brouillon"
    facture_id = create_document(cur, "facture", payload, user_id=user_id)
    cur.execute(
        "UPDATE ordres_travail SET statut = 'facture', updated_at = now() WHERE id = %s",
        (ordre_id,),
    )
    json_log("info", "ordre.invoiced", id=ordre_id, facture_id=facture_id)
    return facture_id


def validate_facture(cur, facture_id) -> dict:
    facture = fetch_document(cur, "facture", facture_id, for_update=True)
    if facture["statut"] != "brouillon":
        raise HTTPException(status_code=409, detail="only draft invoices can be validated")
    cur.execute(
        "UPDATE factures SET statut = 'validee', updated_at = now() WHERE id = %s",
        (facture_id,),
    )
    json_log("info", "facture.validated", id=facture_id, numero=facture["numero"])
    return {"id": facture_id, "statut": "validee"}


def send_facture(cur, facture_id, *, user_id=None) -> dict:
    facture = fetch_document(cur, "facture", facture_id, for_update=True)
    if facture["statut"] not in {"brouillon", "validee"}:
        raise HTTPException(status_code=409, detail=f"invoice cannot be sent from status {facture['statut']}")
    cur.execute(
        "UPDATE factures SET statut = 'envoyee', updated_at = now() WHERE id = %s",
        (facture_id,),
    )
    notify(
        cur,
        type="facture_envoyee",
        titre="Facture envoyee",
        message=f"Facture {facture['numero']} envoyee au client",
        entity_type="facture",
        entity_id=facture_id,
        user_id=user_id,
    )
    json_log("info", "facture.sent", id=facture_id, numero=facture["numero"])
    return {"id": facture_id, "statut": "envoyee"}


def change_devis_status(cur, devis_id, statut: str) -> dict:
    devis = fetch_document(cur, "devis", devis_id, for_update=True)
    allowed = DEVIS_TRANSITIONS.get(devis["statut"], set())
    if statut not in allowed:
        raise HTTPException(status_code=409, detail=f"quote cannot go from {devis['statut']} to {statut}")
    cur.execute(
        "UPDATE devis SET statut = %s, updated_at = now() WHERE id = %s",
        (statut, devis_id),
    )
    json_log("info", "devis.status_changed", id=devis_id, old=devis["statut"], new=statut)
    return {"id": devis_id, "statut": statut}


def soft_delete_document(cur, kind: str, doc_id) -> None:
    k = doc_kind(kind)
    doc = fetch_document(cur, kind, doc_id, for_update=True)
    if Decimal(str(doc.get("montant_paye") or 0)) > 0:
        raise HTTPException(status_code=409, detail=f"cannot delete a {k['label']} with payments")
    cur.execute(
        f"UPDATE {k['table']} SET deleted_at = now(), updated_at = now() WHERE id = %s",
        (doc_id,),
    )
    if kind == "facture":
        recompute_client_balance(cur, doc["client_id"])
    json_log("info", f"{kind}.deleted", id=doc_id, numero=doc["numero"])


def apply_payment(cur, kind: str, doc_id, amount: Decimal, *, user_id=None) -> dict:
    """
    Add `amount` to montant_paye and derive the new status. The document row is
    locked for the rest of the transaction so concurrent payments serialize.
    """
    if kind not in {"facture", "ordre"}:
        raise ValueError(f"payments apply to invoices and work orders, not {kind}")
    k = doc_kind(kind)
    doc = fetch_document(cur, kind, doc_id, for_update=True)
    paye = Decimal(str(doc.get("montant_paye") or 0)) + Decimal(str(amount))
    ttc = Decimal(str(doc.get("montant_ttc") or 0))
    if kind == "facture":
        statut = derive_facture_status(doc["statut"], paye, ttc)
    else:
        statut = derive_ordre_status(doc["statut"], paye, ttc)
    cur.execute(
        f"UPDATE {k['table']} SET montant_paye = %s, statut = %s, updated_at = now() WHERE id = %s",
        (paye, statut, doc_id),
    )
    if kind == "facture":
        recompute_client_balance(cur, doc["client_id"])
        if statut == "payee" and doc["statut"] != "payee":
            notify(
                cur,
                type="facture_payee",
                titre="Facture payee",
                message=f"Facture {doc['numero']} entierement payee",
                entity_type="facture",
                entity_id=doc_id,
                user_id=user_id,
            )
    return {"id": doc_id, "numero": doc["numero"], "client_id": doc["client_id"], "montant_paye": paye, "statut": statut}


def reverse_payment(cur, kind: str, doc_id, amount: Decimal) -> dict:
    """Take `amount` back off montant_paye (floored at 0) and roll the status back."""
    k = doc_kind(kind)
    doc = fetch_document(cur, kind, doc_id, for_update=True, include_deleted=True)
    paye = max(Decimal("0"), Decimal(str(doc.get("montant_paye") or 0)) - Decimal(str(amount)))
    ttc = Decimal(str(doc.get("montant_ttc") or 0))
    if kind == "facture":
        statut = reversed_facture_status(doc["statut"], paye)
    else:
        statut = reversed_ordre_status(doc["statut"], paye, ttc)
    cur.execute(
        f"UPDATE {k['table']} SET montant_paye = %s, statut = %s, updated_at = now() WHERE id = %s",
        (paye, statut, doc_id),
    )
    if kind == "facture":
        recompute_client_balance(cur, doc["client_id"])
    return {"id": doc_id, "numero": doc["numero"], "client_id": doc["client_id"], "montant_paye": paye, "statut": statut}


def list_documents(
    cur,
    kind: str,
    *,
    client_id: Optional[str] = None,
    statut: Optional[str] = None,
    q: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> list:
    k = doc_kind(kind)
    sql = f"""
        SELECT d.*, c.nom AS client_nom
        FROM {k["table"]} d
        JOIN clients c ON c.id = d.client_id
        WHERE d.deleted_at IS NULL
    """
    params: list = []
    if client_id:
        sql += " AND d.client_id = %s"
        params.append(client_id)
    if statut:
        sql += " AND d.statut = %s"
        params.append(statut)
    if q:
        sql += " AND (d.numero ILIKE %s OR c.nom ILIKE %s OR d.numero_bl ILIKE %s)"
        needle = f"%{q.strip()}%"
        params.extend([needle, needle, needle])
    sql += " ORDER BY d.date_creation DESC, d.numero DESC LIMIT %s OFFSET %s"
    params.extend([max(1, min(500, int(limit))), max(0, int(offset))])
    cur.execute(sql, tuple(params))
    return cur.fetchall()
