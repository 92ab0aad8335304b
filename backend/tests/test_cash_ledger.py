from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app import cash_ledger
from backend.app.cash_ledger import record_movement, reconcile_banks, signed_amount, transfer


D = Decimal


class _Cursor:
    """Returns `rows` in order from fetchone; records every statement."""

    def __init__(self, rows=(), many=()):
        self._rows = list(rows)
        self._many = list(many)
        self.executed: list[tuple[str, tuple]] = []

    def execute(self, sql, params=()):
        self.executed.append((sql, tuple(params)))

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None

    def fetchall(self):
        return self._many.pop(0) if self._many else []


def test_signed_amount():
    assert signed_amount("entree", "150.50") == D("150.50")
    assert signed_amount("sortie", D("20")) == D("-20")


def test_drawer_movement_does_not_touch_banks():
    cur = _Cursor([{"id": "m1"}])
    assert record_movement(cur, type="entree", montant=D("5000"), description="Paiement FAC-2025-0001") == "m1"
    assert len(cur.executed) == 1
    params = cur.executed[0][1]
    assert params[0] == "entree"
    assert params[4] == "caisse"


def test_bank_movement_adjusts_the_bank_balance():
    cur = _Cursor([{"id": "m1"}, {"solde": D("-2500")}])
    record_movement(cur, type="sortie", montant=D("2500"), description="Remboursement", banque_id="b1")
    insert_params = cur.executed[0][1]
    assert insert_params[4] == "banque"
    assert insert_params[5] == "b1"
    update_sql, update_params = cur.executed[1]
    assert "UPDATE banques" in update_sql
    assert update_params == (D("-2500"), "b1")


def test_bank_movement_on_missing_bank_fails():
    cur = _Cursor([{"id": "m1"}, None])
    with pytest.raises(HTTPException) as exc_info:
        record_movement(cur, type="entree", montant=D("10"), description="x", banque_id="nope")
    assert exc_info.value.status_code == 404


def test_movement_validation():
    with pytest.raises(HTTPException) as exc_info:
        record_movement(_Cursor(), type="entree", montant=D("0"), description="x")
    assert exc_info.value.status_code == 400
    with pytest.raises(ValueError):
        record_movement(_Cursor(), type="virement", montant=D("10"), description="x")


def test_require_bank_rejects_unknown_and_inactive_accounts():
    with pytest.raises(HTTPException) as exc_info:
        cash_ledger.require_bank(_Cursor([None]), "b1")
    assert exc_info.value.status_code == 400

    with pytest.raises(HTTPException) as exc_info:
        cash_ledger.require_bank(_Cursor([{"id": "b1", "nom": "BGFI", "solde": D("0"), "actif": False}]), "b1")
    assert "inactive" in str(exc_info.value.detail)

    row = cash_ledger.require_bank(_Cursor([{"id": "b1", "nom": "BGFI", "solde": D("0"), "actif": False}]), "b1", active_only=False)
    assert row["id"] == "b1"


def test_transfer_validation():
    for kwargs in (
        {"montant": D("10")},
        {"montant": D("10"), "from_banque_id": "b1", "to_banque_id": "b1"},
        {"montant": D("0"), "to_banque_id": "b1"},
    ):
        with pytest.raises(HTTPException) as exc_info:
            transfer(_Cursor(), **kwargs)
        assert exc_info.value.status_code == 400


def test_drawer_to_bank_transfer_writes_both_legs(monkeypatch):
    monkeypatch.setattr(cash_ledger, "require_bank", lambda _cur, banque_id: {"id": banque_id, "nom": "BGFI"})
    legs = []

    def _movement(_cur, **kw):
        legs.append(kw)
        return f"m{len(legs)}"

    monkeypatch.setattr(cash_ledger, "record_movement", _movement)
    out = transfer(_Cursor(), montant=D("100000"), to_banque_id="b1")
    assert out == {"sortie_id": "m1", "entree_id": "m2", "montant": D("100000")}
    assert [(leg["type"], leg["banque_id"]) for leg in legs] == [("sortie", None), ("entree", "b1")]
    assert legs[0]["description"] == "Transfert caisse -> BGFI"
    assert all(leg["categorie"] == "transfert" for leg in legs)


def test_reconcile_banks_flags_drift():
    rows = [
        {"id": "b1", "nom": "BGFI", "solde": D("1000"), "solde_mouvements": D("1000")},
        {"id": "b2", "nom": "UBA", "solde": D("750"), "solde_mouvements": D("500")},
    ]
    out = reconcile_banks(_Cursor(many=[rows]))
    assert [r["ok"] for r in out] == [True, False]
    assert out[1]["ecart"] == D("250")
