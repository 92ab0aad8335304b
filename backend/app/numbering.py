from datetime import date
from typing import Optional

from fastapi import HTTPException

from .logs import json_log
from .settings_store import load_setting


# doc_type -> (table, column holding the issued number)
SEQUENCES = {
    "devis": ("devis", "numero"),
    "ordre": ("ordres_travail", "numero"),
    "facture": ("factures", "numero"),
    "avoir": ("annulations", "numero_avoir"),
    "annulation": ("annulations", "numero"),
}

# Collisions only happen when rows were written around the counter (imports, manual fixes).
MAX_PROBES = 10000


def format_doc_no(prefix: str, year: int, seq: int) -> str:
    # Zero-pad to 4 digits; longer sequences are kept as-is.
    return f"{prefix}-{year}-{seq:04d}"


def parse_seq_suffix(numero: Optional[str]) -> Optional[int]:
    raw = (numero or "").strip()
    if "-" not in raw:
        return None
    tail = raw.rsplit("-", 1)[1]
    if not tail.isdigit():
        return None
    return int(tail)


def _max_issued_seq(cur, table: str, column: str, prefix: str, year: int) -> int:
    # Soft-deleted rows are included: a number is never reissued.
    cur.execute(
        f"""
        SELECT MAX(CAST(substring({column} FROM '([0-9]+)$') AS integer)) AS max_seq
        FROM {table}
        WHERE {column} LIKE %s
        """,
        (f"{prefix}-{year}-%",),
    )
    row = cur.fetchone()
    return int((row or {}).get("max_seq") or 0)


def _is_taken(cur, table: str, column: str, numero: str) -> bool:
    cur.execute(f"SELECT 1 FROM {table} WHERE {column} = %s LIMIT 1", (numero,))
    return cur.fetchone() is not None


def next_document_no(cur, doc_type: str, year: Optional[int] = None) -> str:
    """
    Issue the next `<PREFIX>-<YYYY>-<NNNN>` number for `doc_type`.

    Must run inside the caller's transaction: the (doc_type, year) counter row stays
    locked until commit so concurrent issuers of the same type serialize, while other
    types and years never contend.
    """
    if doc_type not in SEQUENCES:
        raise ValueError(f"unknown document type: {doc_type}")
    table, column = SEQUENCES[doc_type]
    year = int(year or date.today().year)

    cfg = load_setting(cur, "numerotation")
    prefix = str(cfg.get(f"prefixe_{doc_type}") or "").strip()
    if not prefix:
        raise HTTPException(status_code=500, detail=f"missing numbering prefix for {doc_type}")

    # First use of a (type, year) partition: seed from the legacy counter for the current year.
    seed = 1
    if year == date.today().year:
        try:
            seed = max(1, int(cfg.get(f"prochain_numero_{doc_type}") or 1))
        except (TypeError, ValueError):
            seed = 1
    cur.execute(
        """
        INSERT INTO document_sequences (doc_type, year, next_no)
        VALUES (%s, %s, %s)
        ON CONFLICT (doc_type, year) DO NOTHING
        """,
        (doc_type, year, seed),
    )
    cur.execute(
        """
        SELECT next_no
        FROM document_sequences
        WHERE doc_type = %s AND year = %s
        FOR UPDATE
        """,
        (doc_type, year),
    )
    row = cur.fetchone()
    stored = int((row or {}).get("next_no") or 1)

    candidate = max(_max_issued_seq(cur, table, column, prefix, year) + 1, stored)
    for _ in range(MAX_PROBES):
        numero = format_doc_no(prefix, year, candidate)
        if not _is_taken(cur, table, column, numero):
            break
        candidate += 1
    else:
        json_log("error", "sequence.probe_exhausted", doc_type=doc_type, year=year, last_candidate=candidate)
        raise HTTPException(status_code=500, detail=f"could not allocate a {doc_type} number")

    cur.execute(
        """
        UPDATE document_sequences
        SET next_no = %s, updated_at = now()
        WHERE doc_type = %s AND year = %s
        """,
        (candidate + 1, doc_type, year),
    )
    json_log("info", "sequence.issued", doc_type=doc_type, numero=numero)
    return numero
