from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator, StringConstraints


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


# Canonical codes mirror the CHECK constraints and defaults in `backend/db/migrations/001_init.sql`.
DocKind = Annotated[Literal["devis", "ordre", "facture"], BeforeValidator(_to_lower_str)]
# Documents that can carry payments.
PayableKind = Annotated[Literal["facture", "ordre"], BeforeValidator(_to_lower_str)]

DevisStatus = Annotated[
    Literal["brouillon", "envoye", "accepte", "refuse", "expire", "converti", "annule"],
    BeforeValidator(_to_lower_str),
]
OrdreStatus = Annotated[
    Literal["en_cours", "termine", "facture", "annule"],
    BeforeValidator(_to_lower_str),
]
FactureStatus = Annotated[
    Literal["brouillon", "validee", "envoyee", "partiellement_payee", "payee", "annulee"],
    BeforeValidator(_to_lower_str),
]

ModePaiement = Annotated[
    Literal["especes", "cheque", "virement", "carte", "mobile_money"],
    BeforeValidator(_to_lower_str),
]

MovementType = Annotated[Literal["entree", "sortie"], BeforeValidator(_to_lower_str)]
MovementSource = Annotated[Literal["caisse", "banque"], BeforeValidator(_to_lower_str)]

RemiseType = Annotated[Literal["none", "pourcentage", "montant"], BeforeValidator(_to_lower_str)]

# Free-form business category; "non_assujetti" marks a tax-exempt document.
Categorie = Annotated[
    str,
    BeforeValidator(_to_lower_str),
    StringConstraints(min_length=1, max_length=40, pattern=r"^[a-z0-9][a-z0-9_-]*$"),
]

# Numbering prefixes end up inside document numbers: keep them short and uppercase.
DocPrefix = Annotated[
    str,
    BeforeValidator(_to_upper_str),
    StringConstraints(min_length=1, max_length=10, pattern=r"^[A-Z0-9]+$"),
]
