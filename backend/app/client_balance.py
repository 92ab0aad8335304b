from decimal import Decimal
from typing import Optional


def recompute_client_balance(cur, client_id) -> Optional[Decimal]:
    """
    solde = sum(ttc) - sum(paye) over the client's live, non-cancelled invoices.
    Full recompute from invoice rows (not an accumulator). Returns None when the
    client does not exist so callers can decide whether that is fatal.
    """
    if not client_id:
        return None
    cur.execute(
        """
        SELECT COALESCE(SUM(montant_ttc), 0) AS total_ttc,
               COALESCE(SUM(montant_paye), 0) AS total_paye
        FROM factures
        WHERE client_id = %s
          AND statut <> 'annulee'
          AND deleted_at IS NULL
        """,
        (client_id,),
    )
    row = cur.fetchone() or {}
    solde = Decimal(str(row.get("total_ttc") or 0)) - Decimal(str(row.get("total_paye") or 0))
    cur.execute(
        """
        UPDATE clients
        SET solde = %s, updated_at = now()
        WHERE id = %s
        RETURNING id
        """,
        (solde, client_id),
    )
    if not cur.fetchone():
        return None
    return solde


def client_credit_balance(cur, client_id) -> Decimal:
    """Outstanding credit-note balance (avoirs not yet refunded)."""
    cur.execute(
        """
        SELECT COALESCE(SUM(solde_avoir), 0) AS solde_avoir
        FROM annulations
        WHERE client_id = %s
          AND avoir_genere = true
        """,
        (client_id,),
    )
    row = cur.fetchone() or {}
    return Decimal(str(row.get("solde_avoir") or 0))
