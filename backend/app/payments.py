from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from fastapi import HTTPException

from .activity import write_audit
from .cash_ledger import record_movement, require_bank
from .documents import doc_kind, fetch_document, reste_a_payer
from .lifecycle import apply_payment, reverse_payment
from .logs import json_log


def allocate_amount(total: Decimal, targets: Iterable[Tuple[object, Optional[Decimal], Decimal]]) -> List[Tuple[object, Decimal]]:
    """
    Greedy allocation of `total` across targets in the given order.

    Each target is `(key, requested, outstanding)`. A target takes
    min(requested or outstanding, outstanding, remaining); zero takes are skipped and
    allocation stops once nothing remains. Whatever is left is simply not allocated.
    A key listed more than once shares one outstanding balance across its entries.
    """
    remaining = Decimal(str(total or 0))
    out: List[Tuple[object, Decimal]] = []
    taken: Dict[object, Decimal] = {}
    for key, requested, outstanding in targets:
        if remaining <= 0:
            break
        outstanding = max(Decimal(str(outstanding or 0)) - taken.get(key, Decimal("0")), Decimal("0"))
        want = Decimal(str(requested)) if requested is not None else outstanding
        take = min(want, outstanding, remaining)
        if take <= 0:
            continue
        out.append((key, take))
        taken[key] = taken.get(key, Decimal("0")) + take
        remaining -= take
    return out


def _target(data: dict) -> Tuple[str, object]:
    facture_id = data.get("facture_id")
    ordre_id = data.get("ordre_id")
    if bool(facture_id) == bool(ordre_id):
        raise HTTPException(status_code=400, detail="a payment targets exactly one invoice or work order")
    return ("facture", facture_id) if facture_id else ("ordre", ordre_id)


def create_payment(cur, data: dict, *, user_id=None) -> dict:
    """
    Record a payment and everything it implies, in the caller's transaction:
    the payment row, the document's paid amount/status, an entry movement and,
    for bank payments, the bank balance.
    """
    kind, doc_id = _target(data)
    montant = Decimal(str(data.get("montant") or 0))
    if montant <= 0:
        raise HTTPException(status_code=400, detail="payment amount must be positive")
    banque_id = data.get("banque_id")
    if banque_id:
        require_bank(cur, banque_id)

    doc = fetch_document(cur, kind, doc_id, for_update=True)
    if doc["statut"] == doc_kind(kind)["cancelled_status"]:
        raise HTTPException(status_code=409, detail=f"cannot pay a cancelled {doc_kind(kind)['label']}")

    mode = data.get("mode_paiement") or "especes"
    cur.execute(
        """
        INSERT INTO paiements
          (id, facture_id, ordre_id, client_id, montant, date, mode_paiement, reference,
           banque_id, numero_cheque, notes, created_by)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (
            doc_id if kind == "facture" else None,
            doc_id if kind == "ordre" else None,
            doc["client_id"],
            montant,
            data.get("date_paiement") or date.today(),
            mode,
            data.get("reference"),
            banque_id,
            data.get("numero_cheque"),
            data.get("notes"),
            user_id,
        ),
    )
    paiement_id = cur.fetchone()["id"]

    applied = apply_payment(cur, kind, doc_id, montant, user_id=user_id)
    record_movement(
        cur,
        type="entree",
        montant=montant,
        description=f"Paiement {doc['numero']}",
        banque_id=banque_id,
        paiement_id=paiement_id,
        client_id=doc["client_id"],
        mode_paiement=mode,
        reference=data.get("reference"),
        categorie="paiement",
        movement_date=data.get("date_paiement"),
        user_id=user_id,
    )
    write_audit(
        cur,
        user_id=user_id,
        action="paiement_create",
        entity_type="paiement",
        entity_id=paiement_id,
        details={"document": kind, "document_id": doc_id, "numero": doc["numero"], "montant": montant, "banque_id": banque_id},
    )
    json_log(
        "info",
        "paiement.created",
        id=paiement_id,
        document=kind,
        numero=doc["numero"],
        montant=montant,
        statut=applied["statut"],
    )
    return {
        "id": paiement_id,
        "document": kind,
        "document_id": doc_id,
        "montant": montant,
        "montant_paye": applied["montant_paye"],
        "statut": applied["statut"],
    }


def create_global_payment(cur, data: dict, *, user_id=None) -> dict:
    """
    One amount spread over several invoices/work orders, in the order given.
    Each item is `{"type": "facture"|"ordre", "id": ..., "montant": optional}`.
    """
    items = data.get("documents") or []
    if not items:
        raise HTTPException(status_code=400, detail="no documents to pay")
    total = Decimal(str(data.get("montant") or 0))
    if total <= 0:
        raise HTTPException(status_code=400, detail="payment amount must be positive")
    if data.get("banque_id"):
        require_bank(cur, data["banque_id"])

    targets = []
    for item in items:
        kind = item.get("type")
        if kind not in {"facture", "ordre"}:
            raise HTTPException(status_code=400, detail=f"invalid document type: {kind}")
        doc = fetch_document(cur, kind, item.get("id"))
        outstanding = Decimal("0") if doc["statut"] == doc_kind(kind)["cancelled_status"] else reste_a_payer(doc)
        requested = item.get("montant")
        targets.append(((kind, doc["id"]), Decimal(str(requested)) if requested is not None else None, outstanding))

    paiements = []
    for (kind, doc_id), take in allocate_amount(total, targets):
        paiements.append(
            create_payment(
                cur,
                {
                    "facture_id": doc_id if kind == "facture" else None,
                    "ordre_id": doc_id if kind == "ordre" else None,
                    "montant": take,
                    "mode_paiement": data.get("mode_paiement"),
                    "reference": data.get("reference"),
                    "banque_id": data.get("banque_id"),
                    "numero_cheque": data.get("numero_cheque"),
                    "notes": data.get("notes"),
                    "date_paiement": data.get("date_paiement"),
                },
                user_id=user_id,
            )
        )
    alloue = sum((p["montant"] for p in paiements), Decimal("0"))
    json_log("info", "paiement.global_created", count=len(paiements), montant=total, alloue=alloue)
    return {"paiements": paiements, "montant_alloue": alloue, "montant_non_alloue": total - alloue}


def cancel_payment(cur, paiement_id, *, user_id=None) -> dict:
    """Exact reverse of create_payment, then the payment row is deleted."""
    cur.execute(
        """
        SELECT id, facture_id, ordre_id, client_id, montant, mode_paiement, reference, banque_id
        FROM paiements
        WHERE id = %s
        FOR UPDATE
        """,
        (paiement_id,),
    )
    p = cur.fetchone()
    if not p:
        raise HTTPException(status_code=404, detail="payment not found")
    kind, doc_id = ("facture", p["facture_id"]) if p["facture_id"] else ("ordre", p["ordre_id"])
    montant = Decimal(str(p["montant"]))

    reversed_doc = reverse_payment(cur, kind, doc_id, montant)
    record_movement(
        cur,
        type="sortie",
        montant=montant,
        description=f"Annulation paiement {reversed_doc['numero']}",
        banque_id=p.get("banque_id"),
        client_id=p.get("client_id"),
        mode_paiement=p.get("mode_paiement"),
        reference=p.get("reference"),
        categorie="annulation_paiement",
        user_id=user_id,
    )
    cur.execute("DELETE FROM paiements WHERE id = %s", (paiement_id,))
    write_audit(
        cur,
        user_id=user_id,
        action="paiement_cancel",
        entity_type="paiement",
        entity_id=paiement_id,
        details={"document": kind, "document_id": doc_id, "numero": reversed_doc["numero"], "montant": montant},
    )
    json_log("info", "paiement.cancelled", id=paiement_id, document=kind, numero=reversed_doc["numero"], montant=montant)
    return {
        "id": paiement_id,
        "document": kind,
        "document_id": doc_id,
        "montant_paye": reversed_doc["montant_paye"],
        "statut": reversed_doc["statut"],
    }


def list_payments(
    cur,
    *,
    facture_id: Optional[str] = None,
    ordre_id: Optional[str] = None,
    client_id: Optional[str] = None,
    mode_paiement: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    limit: int = 100,
    offset: int = 0,
) -> list:
    sql = """
        SELECT p.*, c.nom AS client_nom, f.numero AS facture_numero, o.numero AS ordre_numero,
               b.nom AS banque_nom
        FROM paiements p
        JOIN clients c ON c.id = p.client_id
        LEFT JOIN factures f ON f.id = p.facture_id
        LEFT JOIN ordres_travail o ON o.id = p.ordre_id
        LEFT JOIN banques b ON b.id = p.banque_id
        WHERE 1=1
    """
    params: list = []
    for col, val in (
        ("p.facture_id", facture_id),
        ("p.ordre_id", ordre_id),
        ("p.client_id", client_id),
        ("p.mode_paiement", mode_paiement),
    ):
        if val:
            sql += f" AND {col} = %s"
            params.append(val)
    if start_date:
        sql += " AND p.date >= %s"
        params.append(start_date)
    if end_date:
        sql += " AND p.date <= %s"
        params.append(end_date)
    sql += " ORDER BY p.date DESC, p.created_at DESC LIMIT %s OFFSET %s"
    params.extend([max(1, min(500, int(limit))), max(0, int(offset))])
    cur.execute(sql, tuple(params))
    return cur.fetchall()
