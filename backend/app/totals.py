from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional

from .settings_store import get_tax_config


MONEY_Q = Decimal("0.01")
HUNDRED = Decimal("100")

# Tax-exempt category: neither TVA nor CSS applies.
CATEGORIE_NON_ASSUJETTI = "non_assujetti"


def _dec(v) -> Decimal:
    if v is None or v == "":
        return Decimal("0")
    return Decimal(str(v))


def q2(v) -> Decimal:
    return _dec(v).quantize(MONEY_Q, rounding=ROUND_HALF_UP)


def item_amount(item) -> Decimal:
    get = item.get if isinstance(item, dict) else (lambda k: getattr(item, k, None))
    return _dec(get("quantite")) * _dec(get("prix_unitaire"))


def compute_remise(montant_ht: Decimal, remise_type: Optional[str], remise_valeur) -> Decimal:
    kind = (remise_type or "none").strip().lower()
    valeur = _dec(remise_valeur)
    if valeur <= 0 or montant_ht <= 0:
        return Decimal("0")
    if kind == "pourcentage":
        return montant_ht * min(valeur, HUNDRED) / HUNDRED
    if kind == "montant":
        return min(valeur, montant_ht)
    return Decimal("0")


def compute_totals(
    lignes: Iterable = (),
    operations: Iterable = (),
    lots: Iterable = (),
    *,
    taxes: dict,
    categorie: Optional[str] = None,
    remise_type: Optional[str] = None,
    remise_valeur=None,
    exonere_tva: bool = False,
    exonere_css: bool = False,
) -> dict:
    """
    Pure totals computation for one document.

    HT sums quantite x prix_unitaire over line items, container operations and lots
    (a container's own price is not summed). Nothing is rounded until the very end;
    TTC is then derived from the rounded parts so that
    `ttc == ht - remise + tva + css` holds exactly on the stored values.
    """
    ht = sum((item_amount(i) for i in lignes), Decimal("0"))
    ht += sum((item_amount(i) for i in operations), Decimal("0"))
    ht += sum((item_amount(i) for i in lots), Decimal("0"))

    remise = compute_remise(ht, remise_type, remise_valeur)
    base = ht - remise

    non_assujetti = (categorie or "").strip().lower() == CATEGORIE_NON_ASSUJETTI
    tva = Decimal("0")
    css = Decimal("0")
    if not non_assujetti and not exonere_tva and taxes.get("tva_actif", True):
        tva = base * _dec(taxes.get("tva_taux")) / HUNDRED
    if not non_assujetti and not exonere_css and taxes.get("css_actif", True):
        css = base * _dec(taxes.get("css_taux")) / HUNDRED

    out = {
        "montant_ht": q2(ht),
        "remise_montant": q2(remise),
        "montant_tva": q2(tva),
        "montant_css": q2(css),
    }
    out["montant_ttc"] = out["montant_ht"] - out["remise_montant"] + out["montant_tva"] + out["montant_css"]
    return out


def recompute_totals(cur, kind: str, doc_id: str) -> dict:
    """Reload children, recompute and persist the monetary fields. Idempotent."""
    # Imported here: documents imports totals for per-line amounts.
    from .documents import doc_kind, fetch_document, load_children

    k = doc_kind(kind)
    doc = fetch_document(cur, kind, doc_id, include_deleted=True)
    children = load_children(cur, kind, doc_id)
    operations = [op for c in children["conteneurs"] for op in c["operations"]]
    totals = compute_totals(
        children["lignes"],
        operations,
        children["lots"],
        taxes=get_tax_config(cur),
        categorie=doc.get("categorie"),
        remise_type=doc.get("remise_type"),
        remise_valeur=doc.get("remise_valeur"),
        exonere_tva=bool(doc.get("exonere_tva")),
        exonere_css=bool(doc.get("exonere_css")),
    )
    cur.execute(
        f"""
        UPDATE {k["table"]}
        SET montant_ht = %s,
            remise_montant = %s,
            montant_tva = %s,
            montant_css = %s,
            montant_ttc = %s,
            updated_at = now()
        WHERE id = %s
        """,
        (
            totals["montant_ht"],
            totals["remise_montant"],
            totals["montant_tva"],
            totals["montant_css"],
            totals["montant_ttc"],
            doc_id,
        ),
    )
    return totals
