import json
from decimal import Decimal


NUMBERING_DEFAULTS = {
    "prefixe_devis": "DEV",
    "prefixe_ordre": "OT",
    "prefixe_facture": "FAC",
    "prefixe_avoir": "AV",
    "prefixe_annulation": "ANN",
    "prochain_numero_devis": 1,
    "prochain_numero_ordre": 1,
    "prochain_numero_facture": 1,
    "prochain_numero_avoir": 1,
    "prochain_numero_annulation": 1,
}

TAX_DEFAULTS = {
    "tva_taux": 18,
    "css_taux": 1,
    "tva_actif": True,
    "css_actif": True,
}

DEFAULTS = {
    "numerotation": NUMBERING_DEFAULTS,
    "taxes": TAX_DEFAULTS,
}


def load_setting(cur, key: str, *, for_update: bool = False) -> dict:
    """
    Read a JSON configuration blob, merged over its defaults.
    Unknown keys stored in the row are kept as-is.
    """
    cur.execute(
        f"""
        SELECT data
        FROM configurations
        WHERE key = %s
        {"FOR UPDATE" if for_update else ""}
        """,
        (key,),
    )
    row = cur.fetchone()
    data = dict(DEFAULTS.get(key) or {})
    stored = (row or {}).get("data") or {}
    if isinstance(stored, str):
        stored = json.loads(stored)
    data.update(stored)
    return data


def save_setting(cur, key: str, data: dict) -> dict:
    cur.execute(
        """
        INSERT INTO configurations (key, data, updated_at)
        VALUES (%s, %s::jsonb, now())
        ON CONFLICT (key) DO UPDATE
        SET data = EXCLUDED.data,
            updated_at = now()
        """,
        (key, json.dumps(data, default=str)),
    )
    return data


def get_tax_config(cur) -> dict:
    data = load_setting(cur, "taxes")
    return {
        "tva_taux": Decimal(str(data.get("tva_taux") if data.get("tva_taux") is not None else 18)),
        "css_taux": Decimal(str(data.get("css_taux") if data.get("css_taux") is not None else 1)),
        "tva_actif": bool(data.get("tva_actif", True)),
        "css_actif": bool(data.get("css_actif", True)),
    }
