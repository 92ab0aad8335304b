from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app import cancellations
from backend.app.cancellations import cancellation_amount, remaining_credit


D = Decimal


class _Cursor:
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


def _patch_side_effects(monkeypatch):
    calls = {"movements": [], "balances": [], "audit": [], "notify": []}
    numbers = {"annulation": "ANN-2025-0001", "avoir": "AV-2025-0001"}
    monkeypatch.setattr(cancellations, "next_document_no", lambda _cur, doc_type: numbers[doc_type])
    monkeypatch.setattr(cancellations, "record_movement", lambda _cur, **kw: calls["movements"].append(kw) or "m")
    monkeypatch.setattr(cancellations, "require_bank", lambda _cur, banque_id: {"id": banque_id})
    monkeypatch.setattr(
        cancellations, "recompute_client_balance", lambda _cur, client_id: calls["balances"].append(client_id)
    )
    monkeypatch.setattr(cancellations, "notify", lambda _cur, **kw: calls["notify"].append(kw["type"]) or True)
    monkeypatch.setattr(cancellations, "write_audit", lambda _cur, **kw: calls["audit"].append(kw["action"]) or True)
    return calls


def test_cancellation_amount_fallbacks():
    assert cancellation_amount(D("119000"), D("100000"), D("18000"), D("1000")) == D("119000")
    assert cancellation_amount(None, D("100000"), D("18000"), D("1000")) == D("119000")
    assert cancellation_amount(D("0"), D("100000"), None, None) == D("100000")
    assert cancellation_amount(None, None, None, None) == D("0")


def test_remaining_credit():
    assert remaining_credit({"avoir_genere": True, "solde_avoir": D("700"), "montant": D("5000")}) == D("700")
    assert remaining_credit({"avoir_genere": False, "montant": D("5000"), "montant_rembourse": D("1200")}) == D("3800")


def test_invoiced_work_order_cannot_be_cancelled(monkeypatch):
    calls = _patch_side_effects(monkeypatch)
    cur = _Cursor([{"id": "o1", "numero": "OT-2025-0001", "statut": "facture", "client_id": "c1"}])
    with pytest.raises(HTTPException) as exc_info:
        cancellations.cancel_work_order(cur, "o1", "erreur client")
    exc = exc_info.value
    assert exc.status_code == 409
    assert "cancel the invoice first" in str(exc.detail)
    assert len(cur.executed) == 1
    assert not any("INSERT INTO annulations" in sql for sql, _ in cur.executed)
    assert calls["audit"] == []


def test_work_order_cancellation_falls_back_to_summed_amounts(monkeypatch):
    _patch_side_effects(monkeypatch)
    ordre = {
        "id": "o1",
        "numero": "OT-2025-0001",
        "statut": "en_cours",
        "client_id": "c1",
        "montant_ttc": None,
        "montant_ht": D("1000"),
        "montant_tva": D("180"),
        "montant_css": D("10"),
    }
    cur = _Cursor([ordre, {"id": "a1", "numero": "ANN-2025-0001"}])
    cancellations.cancel_work_order(cur, "o1", "doublon")
    insert_params = next(params for sql, params in cur.executed if "INSERT INTO annulations" in sql)
    assert insert_params[1] == "ordre"
    assert insert_params[5] == D("1190")
    assert cur.executed[-1][1] == ("o1",)


def test_cancel_invoice_reverses_payments_and_issues_credit(monkeypatch):
    calls = _patch_side_effects(monkeypatch)
    facture = {
        "id": "f1",
        "numero": "FAC-2025-0001",
        "client_id": "c1",
        "statut": "partiellement_payee",
        "montant_ttc": D("119000"),
    }
    paiements = [
        {"id": "p1", "montant": D("30000"), "mode_paiement": "especes", "reference": None, "banque_id": None},
        {"id": "p2", "montant": D("20000"), "mode_paiement": "virement", "reference": "VIR-9", "banque_id": "b1"},
    ]
    cur = _Cursor([facture, {"id": "a1", "numero": "ANN-2025-0001"}], many=[paiements])

    out = cancellations.cancel_invoice(cur, "f1", "erreur de facturation", issue_credit=True, user_id="u1")

    assert out["numero"] == "ANN-2025-0001"
    insert_params = next(params for sql, params in cur.executed if "INSERT INTO annulations" in sql)
    assert insert_params[5] == D("119000")
    assert insert_params[8:11] == (True, "AV-2025-0001", D("50000"))

    assert [(m["type"], m["montant"], m["banque_id"]) for m in calls["movements"]] == [
        ("sortie", D("30000"), None),
        ("sortie", D("20000"), "b1"),
    ]
    deleted = [params for sql, params in cur.executed if sql.startswith("DELETE FROM paiements")]
    assert deleted == [("p1",), ("p2",)]
    assert any("statut = 'annulee'" in sql for sql, _ in cur.executed)
    assert calls["balances"] == ["c1"]
    assert calls["notify"] == ["facture_annulee"]
    assert calls["audit"] == ["facture_cancel"]


def test_unpaid_invoice_cancellation_skips_credit_note(monkeypatch):
    calls = _patch_side_effects(monkeypatch)
    facture = {"id": "f1", "numero": "FAC-2025-0001", "client_id": "c1", "statut": "validee", "montant_ttc": D("500")}
    cur = _Cursor([facture, {"id": "a1", "numero": "ANN-2025-0001"}], many=[[]])
    cancellations.cancel_invoice(cur, "f1", "annulee", issue_credit=True)
    insert_params = next(params for sql, params in cur.executed if "INSERT INTO annulations" in sql)
    assert insert_params[8:11] == (False, None, D("0"))
    assert calls["movements"] == []


def test_cancelled_invoice_cannot_be_cancelled_again():
    cur = _Cursor([{"id": "f1", "numero": "FAC-2025-0001", "client_id": "c1", "statut": "annulee"}])
    with pytest.raises(HTTPException) as exc_info:
        cancellations.cancel_invoice(cur, "f1", "x")
    assert exc_info.value.status_code == 409


def test_refund_cannot_exceed_remaining_credit(monkeypatch):
    calls = _patch_side_effects(monkeypatch)
    cur = _Cursor([{"id": "a1", "numero": "ANN-2025-0001", "avoir_genere": True, "solde_avoir": D("1000")}])
    with pytest.raises(HTTPException) as exc_info:
        cancellations.refund(cur, "a1", D("1500"), mode_paiement="especes")
    assert exc_info.value.status_code == 409
    assert calls["movements"] == []


def test_full_refund_marks_cancellation_refunded(monkeypatch):
    calls = _patch_side_effects(monkeypatch)
    annulation = {
        "id": "a1",
        "numero": "ANN-2025-0001",
        "client_id": "c1",
        "avoir_genere": False,
        "montant": D("5000"),
        "montant_rembourse": D("1000"),
    }
    cur = _Cursor([annulation, {**annulation, "montant_rembourse": D("5000"), "rembourse": True}])

    out = cancellations.refund(cur, "a1", D("4000"), mode_paiement="virement", banque_id="b1", user_id="u1")

    assert out["rembourse"] is True
    mv = calls["movements"][0]
    assert (mv["type"], mv["montant"], mv["banque_id"], mv["categorie"]) == ("sortie", D("4000"), "b1", "remboursement")
    update_params = cur.executed[-1][1]
    assert update_params[:3] == (D("4000"), D("4000"), True)
    assert calls["audit"] == ["remboursement_create"]


def test_credit_note_is_generated_once(monkeypatch):
    _patch_side_effects(monkeypatch)
    cur = _Cursor([{"id": "a1", "numero": "ANN-2025-0001", "avoir_genere": True}])
    with pytest.raises(HTTPException) as exc_info:
        cancellations.generate_credit_note(cur, "a1")
    assert exc_info.value.status_code == 409


def test_refunded_cancellation_gets_no_credit_note(monkeypatch):
    calls = _patch_side_effects(monkeypatch)
    cur = _Cursor(
        [
            {
                "id": "a1",
                "numero": "ANN-2025-0001",
                "avoir_genere": False,
                "montant": D("100"),
                "montant_rembourse": D("100"),
                "rembourse": True,
            }
        ]
    )
    with pytest.raises(HTTPException) as exc_info:
        cancellations.generate_credit_note(cur, "a1")
    assert exc_info.value.status_code == 409
    assert len(cur.executed) == 1
    assert calls["audit"] == []


def test_credit_note_covers_only_the_unrefunded_part(monkeypatch):
    calls = _patch_side_effects(monkeypatch)
    annulation = {
        "id": "a1",
        "numero": "ANN-2025-0001",
        "avoir_genere": False,
        "montant": D("5000"),
        "montant_rembourse": D("1500"),
        "rembourse": False,
    }
    cur = _Cursor([annulation, {**annulation, "avoir_genere": True, "numero_avoir": "AV-2025-0001", "solde_avoir": D("3500")}])

    out = cancellations.generate_credit_note(cur, "a1", user_id="u1")

    assert cur.executed[-1][1] == ("AV-2025-0001", D("3500"), "a1")
    assert out["solde_avoir"] == D("3500")
    assert calls["audit"] == ["avoir_create"]
