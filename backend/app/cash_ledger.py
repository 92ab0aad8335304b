from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import HTTPException


def signed_amount(type: str, montant) -> Decimal:
    amt = Decimal(str(montant or 0))
    return amt if type == "entree" else -amt


def require_bank(cur, banque_id, *, active_only: bool = True) -> dict:
    cur.execute(
        """
        SELECT id, nom, solde, actif
        FROM banques
        WHERE id = %s
        """,
        (banque_id,),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=400, detail="unknown bank")
    if active_only and not row.get("actif", True):
        raise HTTPException(status_code=400, detail="bank account is inactive")
    return row


def adjust_bank_balance(cur, banque_id, delta: Decimal) -> Optional[Decimal]:
    """Apply `delta` to the bank's running balance. None when the bank does not exist."""
    cur.execute(
        """
        UPDATE banques
        SET solde = solde + %s, updated_at = now()
        WHERE id = %s
        RETURNING solde
        """,
        (delta, banque_id),
    )
    row = cur.fetchone()
    if not row:
        return None
    return Decimal(str(row["solde"]))


def record_movement(
    cur,
    *,
    type: str,
    montant,
    description: str,
    banque_id=None,
    paiement_id=None,
    client_id=None,
    mode_paiement: Optional[str] = None,
    reference: Optional[str] = None,
    categorie: Optional[str] = None,
    beneficiaire: Optional[str] = None,
    movement_date: Optional[date] = None,
    user_id=None,
) -> str:
    """
    Append one cash movement. A bank-linked movement is always paired with the
    matching balance adjustment in the same transaction.
    """
    if type not in {"entree", "sortie"}:
        raise ValueError(f"invalid movement type: {type}")
    amt = Decimal(str(montant or 0))
    if amt <= 0:
        raise HTTPException(status_code=400, detail="movement amount must be positive")
    source = "banque" if banque_id else "caisse"
    cur.execute(
        """
        INSERT INTO mouvements_caisse
          (id, type, montant, date, description, source, banque_id, paiement_id, client_id,
           mode_paiement, reference, categorie, beneficiaire, created_by)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (
            type,
            amt,
            movement_date or date.today(),
            description,
            source,
            banque_id,
            paiement_id,
            client_id,
            mode_paiement,
            reference,
            categorie,
            beneficiaire,
            user_id,
        ),
    )
    movement_id = cur.fetchone()["id"]
    if banque_id:
        if adjust_bank_balance(cur, banque_id, signed_amount(type, amt)) is None:
            raise HTTPException(status_code=404, detail="bank not found")
    return movement_id


def transfer(
    cur,
    *,
    montant,
    from_banque_id=None,
    to_banque_id=None,
    description: Optional[str] = None,
    reference: Optional[str] = None,
    user_id=None,
) -> dict:
    """
    Move money between the cash drawer (bank id None) and a bank, or between two banks.
    Written as an exit on the source side and an entry on the destination side.
    """
    if not from_banque_id and not to_banque_id:
        raise HTTPException(status_code=400, detail="transfer needs at least one bank account")
    if from_banque_id and to_banque_id and str(from_banque_id) == str(to_banque_id):
        raise HTTPException(status_code=400, detail="source and destination must differ")
    amt = Decimal(str(montant or 0))
    if amt <= 0:
        raise HTTPException(status_code=400, detail="transfer amount must be positive")

    src = require_bank(cur, from_banque_id) if from_banque_id else None
    dst = require_bank(cur, to_banque_id) if to_banque_id else None
    src_label = src["nom"] if src else "caisse"
    dst_label = dst["nom"] if dst else "caisse"
    label = description or f"Transfert {src_label} -> {dst_label}"

    out_id = record_movement(
        cur,
        type="sortie",
        montant=amt,
        description=label,
        banque_id=from_banque_id,
        reference=reference,
        categorie="transfert",
        user_id=user_id,
    )
    in_id = record_movement(
        cur,
        type="entree",
        montant=amt,
        description=label,
        banque_id=to_banque_id,
        reference=reference,
        categorie="transfert",
        user_id=user_id,
    )
    return {"sortie_id": out_id, "entree_id": in_id, "montant": amt}


def drawer_balance(cur) -> dict:
    cur.execute(
        """
        SELECT COALESCE(SUM(montant) FILTER (WHERE type = 'entree'), 0) AS entrees,
               COALESCE(SUM(montant) FILTER (WHERE type = 'sortie'), 0) AS sorties
        FROM mouvements_caisse
        WHERE source = 'caisse'
        """
    )
    row = cur.fetchone() or {}
    entrees = Decimal(str(row.get("entrees") or 0))
    sorties = Decimal(str(row.get("sorties") or 0))
    return {"entrees": entrees, "sorties": sorties, "solde": entrees - sorties}


def reconcile_banks(cur) -> list:
    """Compare each bank's stored solde with the signed sum of its movements."""
    cur.execute(
        """
        SELECT b.id, b.nom, b.solde,
               COALESCE(SUM(CASE WHEN m.type = 'entree' THEN m.montant ELSE -m.montant END), 0) AS solde_mouvements
        FROM banques b
        LEFT JOIN mouvements_caisse m ON m.banque_id = b.id
        GROUP BY b.id, b.nom, b.solde
        ORDER BY b.nom
        """
    )
    out = []
    for r in cur.fetchall():
        solde = Decimal(str(r.get("solde") or 0))
        mouvements = Decimal(str(r.get("solde_mouvements") or 0))
        out.append(
            {
                "id": r["id"],
                "nom": r["nom"],
                "solde": solde,
                "solde_mouvements": mouvements,
                "ecart": solde - mouvements,
                "ok": solde == mouvements,
            }
        )
    return out
