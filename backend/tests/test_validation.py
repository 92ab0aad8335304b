from typing import Optional

import pytest
from pydantic import BaseModel, ValidationError

from backend.app.validation import (
    Categorie,
    DocPrefix,
    FactureStatus,
    ModePaiement,
    MovementType,
    PayableKind,
    RemiseType,
)


class _M(BaseModel):
    mode: ModePaiement
    movement: MovementType
    statut: FactureStatus
    remise: RemiseType
    kind: PayableKind
    categorie: Optional[Categorie] = None
    prefix: Optional[DocPrefix] = None


def test_validation_types_normalize_case():
    m = _M(
        mode=" Especes ",
        movement="ENTREE",
        statut="Partiellement_Payee",
        remise="Pourcentage",
        kind="FACTURE",
        categorie=" Non_Assujetti ",
        prefix=" fac ",
    )
    assert m.mode == "especes"
    assert m.movement == "entree"
    assert m.statut == "partiellement_payee"
    assert m.remise == "pourcentage"
    assert m.kind == "facture"
    assert m.categorie == "non_assujetti"
    assert m.prefix == "FAC"


def test_mode_paiement_rejects_unknown_values():
    with pytest.raises(ValidationError):
        _M(mode="bitcoin", movement="entree", statut="brouillon", remise="none", kind="facture")


def test_payable_kind_rejects_quotes():
    with pytest.raises(ValidationError):
        _M(mode="especes", movement="entree", statut="brouillon", remise="none", kind="devis")


def test_doc_prefix_rejects_separators_and_long_values():
    base = dict(mode="especes", movement="sortie", statut="brouillon", remise="none", kind="ordre")
    with pytest.raises(ValidationError):
        _M(prefix="FA-C", **base)
    with pytest.raises(ValidationError):
        _M(prefix="ABCDEFGHIJK", **base)
    assert _M(prefix="OT2", **base).prefix == "OT2"


def test_categorie_rejects_internal_spaces():
    base = dict(mode="especes", movement="sortie", statut="brouillon", remise="none", kind="ordre")
    with pytest.raises(ValidationError):
        _M(categorie="conteneurs import", **base)
    assert _M(categorie="conventionnel", **base).categorie == "conventionnel"
