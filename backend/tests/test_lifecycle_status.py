from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app import lifecycle
from backend.app.lifecycle import (
    clamp_validite_jours,
    derive_facture_status,
    derive_ordre_status,
    reversed_facture_status,
    reversed_ordre_status,
)


D = Decimal


def test_facture_status_follows_paid_amount():
    assert derive_facture_status("validee", D("119000"), D("119000")) == "payee"
    assert derive_facture_status("envoyee", D("150000"), D("119000")) == "payee"
    assert derive_facture_status("validee", D("50000"), D("119000")) == "partiellement_payee"
    assert derive_facture_status("brouillon", D("0"), D("119000")) == "brouillon"


def test_ordre_becomes_termine_when_fully_paid():
    assert derive_ordre_status("en_cours", D("1000"), D("1000")) == "termine"
    assert derive_ordre_status("en_cours", D("999.99"), D("1000")) == "en_cours"
    # Invoiced orders keep their status.
    assert derive_ordre_status("facture", D("1000"), D("1000")) == "facture"


def test_reversing_payments_rolls_status_back():
    assert reversed_facture_status("payee", D("20000")) == "partiellement_payee"
    assert reversed_facture_status("payee", D("0")) == "validee"
    assert reversed_facture_status("partiellement_payee", D("0")) == "validee"
    assert reversed_facture_status("envoyee", D("0")) == "envoyee"

    assert reversed_ordre_status("termine", D("500"), D("1000")) == "en_cours"
    assert reversed_ordre_status("termine", D("1000"), D("1000")) == "termine"
    assert reversed_ordre_status("facture", D("0"), D("1000")) == "facture"


def test_clamp_validite_jours():
    assert clamp_validite_jours(15) == 15
    assert clamp_validite_jours(0) == 1
    assert clamp_validite_jours(-3) == 1
    assert clamp_validite_jours(1000) == 365
    assert clamp_validite_jours("45") == 45
    assert clamp_validite_jours(None) == 30


class _Cursor:
    def __init__(self, rows):
        self._rows = list(rows)
        self.executed: list[tuple[str, tuple]] = []

    def execute(self, sql, params=()):
        self.executed.append((sql, tuple(params)))

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None


def test_change_devis_status_enforces_transitions():
    cur = _Cursor([{"id": "d1", "numero": "DEV-2025-0001", "statut": "brouillon"}])
    with pytest.raises(HTTPException) as exc_info:
        lifecycle.change_devis_status(cur, "d1", "accepte")
    assert exc_info.value.status_code == 409

    cur = _Cursor([{"id": "d1", "numero": "DEV-2025-0001", "statut": "envoye"}])
    assert lifecycle.change_devis_status(cur, "d1", "accepte") == {"id": "d1", "statut": "accepte"}
    assert cur.executed[-1][1] == ("accepte", "d1")


def test_frozen_documents_cannot_be_modified():
    cur = _Cursor([{"id": "o1", "numero": "OT-2025-0001", "statut": "facture", "client_id": "c1"}])
    with pytest.raises(HTTPException) as exc_info:
        lifecycle.modify_document(cur, "ordre", "o1", {"notes": "x"})
    assert exc_info.value.status_code == 409
    assert len(cur.executed) == 1


def test_paid_documents_cannot_be_deleted():
    cur = _Cursor([{"id": "f1", "numero": "FAC-2025-0001", "statut": "partiellement_payee", "montant_paye": D("10")}])
    with pytest.raises(HTTPException) as exc_info:
        lifecycle.soft_delete_document(cur, "facture", "f1")
    assert exc_info.value.status_code == 409


def test_apply_payment_updates_status_and_client_balance(monkeypatch):
    recomputed = []
    notified = []
    monkeypatch.setattr(lifecycle, "recompute_client_balance", lambda _cur, client_id: recomputed.append(client_id))
    monkeypatch.setattr(lifecycle, "notify", lambda _cur, **kw: notified.append(kw["type"]) or True)
    cur = _Cursor(
        [
            {
                "id": "f1",
                "numero": "FAC-2025-0001",
                "client_id": "c1",
                "statut": "partiellement_payee",
                "montant_paye": D("69000"),
                "montant_ttc": D("119000"),
            }
        ]
    )
    out = lifecycle.apply_payment(cur, "facture", "f1", D("50000"))
    assert out["montant_paye"] == D("119000")
    assert out["statut"] == "payee"
    assert recomputed == ["c1"]
    assert notified == ["facture_payee"]


def test_reverse_payment_floors_at_zero(monkeypatch):
    monkeypatch.setattr(lifecycle, "recompute_client_balance", lambda *_args: None)
    cur = _Cursor(
        [
            {
                "id": "o1",
                "numero": "OT-2025-0001",
                "client_id": "c1",
                "statut": "termine",
                "montant_paye": D("100"),
                "montant_ttc": D("1000"),
            }
        ]
    )
    out = lifecycle.reverse_payment(cur, "ordre", "o1", D("250"))
    assert out["montant_paye"] == D("0")
    assert out["statut"] == "en_cours"


def test_apply_payment_rejects_quotes():
    with pytest.raises(ValueError):
        lifecycle.apply_payment(_Cursor([]), "devis", "d1", D("1"))
