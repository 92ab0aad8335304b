from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import HTTPException

from .activity import notify, write_audit
from .cash_ledger import record_movement, require_bank
from .client_balance import recompute_client_balance
from .documents import fetch_document
from .logs import json_log
from .numbering import next_document_no


def cancellation_amount(montant_ttc, montant_ht, montant_tva, montant_css) -> Decimal:
    """
    Amount recorded when cancelling a work order: ttc when set, else ht+tva+css,
    and ht if that still comes out as zero while ht is positive.
    """
    ht = Decimal(str(montant_ht or 0))
    if montant_ttc is not None:
        montant = Decimal(str(montant_ttc))
    else:
        montant = ht + Decimal(str(montant_tva or 0)) + Decimal(str(montant_css or 0))
    if montant == 0 and ht > 0:
        montant = ht
    return montant


def remaining_credit(annulation: dict) -> Decimal:
    if annulation.get("avoir_genere"):
        return Decimal(str(annulation.get("solde_avoir") or 0))
    montant = Decimal(str(annulation.get("montant") or 0))
    return montant - Decimal(str(annulation.get("montant_rembourse") or 0))


def _insert_annulation(
    cur,
    *,
    type: str,
    doc: dict,
    montant: Decimal,
    motif: str,
    numero_avoir: Optional[str] = None,
    solde_avoir: Decimal = Decimal("0"),
    user_id=None,
) -> dict:
    numero = next_document_no(cur, "annulation")
    cur.execute(
        """
        INSERT INTO annulations
          (id, numero, type, document_id, document_numero, client_id, montant, date, motif,
           avoir_genere, numero_avoir, solde_avoir, created_by)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING *
        """,
        (
            numero,
            type,
            doc["id"],
            doc["numero"],
            doc.get("client_id"),
            montant,
            date.today(),
            motif,
            numero_avoir is not None,
            numero_avoir,
            solde_avoir,
            user_id,
        ),
    )
    return cur.fetchone()


def cancel_invoice(cur, facture_id, motif: str, *, issue_credit: bool = False, user_id=None) -> dict:
    """
    Cancel an invoice: record the cancellation, reverse and delete every payment
    (cash/bank exits included), flag the invoice, and recompute the client balance.
    """
    facture = fetch_document(cur, "facture", facture_id, for_update=True)
    if facture["statut"] == "annulee":
        raise HTTPException(status_code=409, detail="invoice already cancelled")

    cur.execute(
        """
        SELECT id, montant, mode_paiement, reference, banque_id
        FROM paiements
        WHERE facture_id = %s
        ORDER BY date, created_at
        FOR UPDATE
        """,
        (facture_id,),
    )
    paiements = cur.fetchall()
    total_paye = sum((Decimal(str(p["montant"])) for p in paiements), Decimal("0"))

    numero_avoir = None
    if issue_credit and total_paye > 0:
        numero_avoir = next_document_no(cur, "avoir")
    annulation = _insert_annulation(
        cur,
        type="facture",
        doc=facture,
        montant=Decimal(str(facture.get("montant_ttc") or 0)),
        motif=motif,
        numero_avoir=numero_avoir,
        solde_avoir=total_paye if numero_avoir else Decimal("0"),
        user_id=user_id,
    )

    for p in paiements:
        record_movement(
            cur,
            type="sortie",
            montant=p["montant"],
            description=f"Annulation facture {facture['numero']} - remboursement paiement",
            banque_id=p.get("banque_id"),
            client_id=facture["client_id"],
            mode_paiement=p.get("mode_paiement"),
            reference=p.get("reference"),
            categorie="annulation_facture",
            user_id=user_id,
        )
        cur.execute("DELETE FROM paiements WHERE id = %s", (p["id"],))

    cur.execute(
        """
        UPDATE factures
        SET statut = 'annulee', montant_paye = 0, updated_at = now()
        WHERE id = %s
        """,
        (facture_id,),
    )
    recompute_client_balance(cur, facture["client_id"])

    notify(
        cur,
        type="facture_annulee",
        titre="Facture annulee",
        message=f"Facture {facture['numero']} annulee ({annulation['numero']}): {motif}",
        entity_type="facture",
        entity_id=facture_id,
        user_id=user_id,
    )
    write_audit(
        cur,
        user_id=user_id,
        action="facture_cancel",
        entity_type="facture",
        entity_id=facture_id,
        details={
            "annulation": annulation["numero"],
            "motif": motif,
            "paiements_annules": len(paiements),
            "montant_rembourse": total_paye,
            "numero_avoir": numero_avoir,
        },
    )
    json_log(
        "info",
        "annulation.facture",
        id=annulation["id"],
        numero=annulation["numero"],
        facture=facture["numero"],
        paiements=len(paiements),
        numero_avoir=numero_avoir,
    )
    return annulation


def cancel_work_order(cur, ordre_id, motif: str, *, user_id=None) -> dict:
    ordre = fetch_document(cur, "ordre", ordre_id, for_update=True)
    if ordre["statut"] == "annule":
        raise HTTPException(status_code=409, detail="work order already cancelled")
    if ordre["statut"] == "facture":
        raise HTTPException(status_code=409, detail="work order already invoiced; cancel the invoice first")

    montant = cancellation_amount(
        ordre.get("montant_ttc"),
        ordre.get("montant_ht"),
        ordre.get("montant_tva"),
        ordre.get("montant_css"),
    )
    annulation = _insert_annulation(cur, type="ordre", doc=ordre, montant=montant, motif=motif, user_id=user_id)
    cur.execute(
        "UPDATE ordres_travail SET statut = 'annule', updated_at = now() WHERE id = %s",
        (ordre_id,),
    )
    notify(
        cur,
        type="ordre_annule",
        titre="Ordre de travail annule",
        message=f"Ordre {ordre['numero']} annule ({annulation['numero']}): {motif}",
        entity_type="ordre",
        entity_id=ordre_id,
        user_id=user_id,
    )
    write_audit(
        cur,
        user_id=user_id,
        action="ordre_cancel",
        entity_type="ordre",
        entity_id=ordre_id,
        details={"annulation": annulation["numero"], "motif": motif, "montant": montant},
    )
    json_log("info", "annulation.ordre", id=annulation["id"], numero=annulation["numero"], ordre=ordre["numero"])
    return annulation


def cancel_quote(cur, devis_id, motif: str, *, user_id=None) -> dict:
    devis = fetch_document(cur, "devis", devis_id, for_update=True)
    if devis["statut"] == "annule":
        raise HTTPException(status_code=409, detail="quote already cancelled")
    if devis["statut"] == "converti":
        raise HTTPException(status_code=409, detail="quote already converted")

    annulation = _insert_annulation(
        cur,
        type="devis",
        doc=devis,
        montant=Decimal(str(devis.get("montant_ttc") or 0)),
        motif=motif,
        user_id=user_id,
    )
    cur.execute(
        "UPDATE devis SET statut = 'annule', updated_at = now() WHERE id = %s",
        (devis_id,),
    )
    write_audit(
        cur,
        user_id=user_id,
        action="devis_cancel",
        entity_type="devis",
        entity_id=devis_id,
        details={"annulation": annulation["numero"], "motif": motif},
    )
    json_log("info", "annulation.devis", id=annulation["id"], numero=annulation["numero"], devis=devis["numero"])
    return annulation


def _lock_annulation(cur, annulation_id) -> dict:
    cur.execute("SELECT * FROM annulations WHERE id = %s FOR UPDATE", (annulation_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="cancellation not found")
    return row


def generate_credit_note(cur, annulation_id, *, user_id=None) -> dict:
    annulation = _lock_annulation(cur, annulation_id)
    if annulation["avoir_genere"]:
        raise HTTPException(status_code=409, detail="credit note already generated for this cancellation")
    # Only what has not been refunded yet becomes credit.
    solde = remaining_credit(annulation)
    if annulation.get("rembourse") or solde <= 0:
        raise HTTPException(status_code=409, detail="cancellation already fully refunded")
    numero_avoir = next_document_no(cur, "avoir")
    cur.execute(
        """
        UPDATE annulations
        SET avoir_genere = true, numero_avoir = %s, solde_avoir = %s
        WHERE id = %s
        RETURNING *
        """,
        (numero_avoir, solde, annulation_id),
    )
    row = cur.fetchone()
    write_audit(
        cur,
        user_id=user_id,
        action="avoir_create",
        entity_type="annulation",
        entity_id=annulation_id,
        details={"numero_avoir": numero_avoir, "montant": row["solde_avoir"]},
    )
    json_log("info", "avoir.created", annulation=annulation["numero"], numero_avoir=numero_avoir)
    return row


def refund(
    cur,
    annulation_id,
    montant,
    *,
    mode_paiement: str,
    banque_id=None,
    reference: Optional[str] = None,
    notes: Optional[str] = None,
    user_id=None,
) -> dict:
    """Pay money back against a cancellation (or its credit note)."""
    annulation = _lock_annulation(cur, annulation_id)
    amt = Decimal(str(montant or 0))
    if amt <= 0:
        raise HTTPException(status_code=400, detail="refund amount must be positive")
    remaining = remaining_credit(annulation)
    if amt > remaining:
        raise HTTPException(status_code=409, detail=f"refund exceeds remaining credit ({remaining})")
    if banque_id:
        require_bank(cur, banque_id)

    description = f"Remboursement annulation {annulation['numero']}"
    if notes:
        description = f"{description} - {notes}"
    record_movement(
        cur,
        type="sortie",
        montant=amt,
        description=description,
        banque_id=banque_id,
        client_id=annulation.get("client_id"),
        mode_paiement=mode_paiement,
        reference=reference,
        categorie="remboursement",
        user_id=user_id,
    )
    left = remaining - amt
    cur.execute(
        """
        UPDATE annulations
        SET montant_rembourse = montant_rembourse + %s,
            solde_avoir = CASE WHEN avoir_genere THEN solde_avoir - %s ELSE solde_avoir END,
            rembourse = %s,
            date_remboursement = %s
        WHERE id = %s
        RETURNING *
        """,
        (amt, amt, left <= 0, date.today(), annulation_id),
    )
    row = cur.fetchone()
    write_audit(
        cur,
        user_id=user_id,
        action="remboursement_create",
        entity_type="annulation",
        entity_id=annulation_id,
        details={"numero": annulation["numero"], "montant": amt, "mode_paiement": mode_paiement, "banque_id": banque_id},
    )
    json_log("info", "annulation.refunded", numero=annulation["numero"], montant=amt, restant=left)
    return row


def list_cancellations(
    cur,
    *,
    type: Optional[str] = None,
    client_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    limit: int = 100,
    offset: int = 0,
) -> list:
    sql = """
        SELECT a.*, c.nom AS client_nom
        FROM annulations a
        LEFT JOIN clients c ON c.id = a.client_id
        WHERE 1=1
    """
    params: list = []
    if type:
        sql += " AND a.type = %s"
        params.append(type)
    if client_id:
        sql += " AND a.client_id = %s"
        params.append(client_id)
    if start_date:
        sql += " AND a.date >= %s"
        params.append(start_date)
    if end_date:
        sql += " AND a.date <= %s"
        params.append(end_date)
    sql += " ORDER BY a.date DESC, a.numero DESC LIMIT %s OFFSET %s"
    params.extend([max(1, min(500, int(limit))), max(0, int(offset))])
    cur.execute(sql, tuple(params))
    return cur.fetchall()


def cancellation_stats(cur, *, start_date: Optional[date] = None, end_date: Optional[date] = None) -> dict:
    where = "WHERE (%s::date IS NULL OR date >= %s::date) AND (%s::date IS NULL OR date <= %s::date)"
    params = (start_date, start_date, end_date, end_date)
    cur.execute(
        f"""
        SELECT type, COUNT(*) AS nombre, COALESCE(SUM(montant), 0) AS montant_total
        FROM annulations
        {where}
        GROUP BY type
        ORDER BY type
        """,
        params,
    )
    par_type = cur.fetchall()
    cur.execute(
        f"""
        SELECT COUNT(*) AS nombre,
               COALESCE(SUM(montant_rembourse), 0) AS montant_rembourse,
               COALESCE(SUM(solde_avoir), 0) AS solde_avoir
        FROM annulations
        {where}
          AND avoir_genere = true
        """,
        params,
    )
    avoirs = cur.fetchone() or {}
    return {
        "total": sum(int(r["nombre"]) for r in par_type),
        "montant_total": sum((Decimal(str(r["montant_total"])) for r in par_type), Decimal("0")),
        "par_type": par_type,
        "avoirs_generes": int(avoirs.get("nombre") or 0),
        "avoirs_montant_rembourse": Decimal(str(avoirs.get("montant_rembourse") or 0)),
        "avoirs_solde": Decimal(str(avoirs.get("solde_avoir") or 0)),
    }


def client_cancellation_history(cur, client_id) -> dict:
    rows = list_cancellations(cur, client_id=client_id, limit=500)
    par_type: dict = {}
    for r in rows:
        bucket = par_type.setdefault(r["type"], {"nombre": 0, "montant": Decimal("0")})
        bucket["nombre"] += 1
        bucket["montant"] += Decimal(str(r["montant"] or 0))
    return {
        "client_id": client_id,
        "total": len(rows),
        "montant_total": sum((Decimal(str(r["montant"] or 0)) for r in rows), Decimal("0")),
        "par_type": par_type,
        "annulations": rows,
    }
