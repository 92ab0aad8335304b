from decimal import Decimal

from backend.app.client_balance import client_credit_balance, recompute_client_balance
from backend.app.settings_store import get_tax_config, load_setting


class _Cursor:
    def __init__(self, rows=()):
        self._rows = list(rows)
        self.executed: list[tuple[str, tuple]] = []

    def execute(self, sql, params=()):
        self.executed.append((sql, tuple(params)))

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None


def test_balance_is_ttc_minus_paid_over_live_invoices():
    cur = _Cursor([{"total_ttc": Decimal("238000"), "total_paye": Decimal("119000")}, {"id": "c1"}])
    assert recompute_client_balance(cur, "c1") == Decimal("119000")
    select_sql = cur.executed[0][0]
    assert "statut <> 'annulee'" in select_sql
    assert "deleted_at IS NULL" in select_sql
    assert cur.executed[1][1] == (Decimal("119000"), "c1")


def test_balance_for_missing_client_is_none():
    assert recompute_client_balance(_Cursor([{"total_ttc": 0, "total_paye": 0}, None]), "c404") is None
    cur = _Cursor()
    assert recompute_client_balance(cur, None) is None
    assert cur.executed == []


def test_credit_balance_sums_open_credit_notes():
    assert client_credit_balance(_Cursor([{"solde_avoir": Decimal("1500")}]), "c1") == Decimal("1500")


def test_settings_merge_over_defaults():
    cur = _Cursor([{"data": '{"prefixe_facture": "FC", "custom": 1}'}])
    cfg = load_setting(cur, "numerotation")
    assert cfg["prefixe_facture"] == "FC"
    assert cfg["prefixe_devis"] == "DEV"
    assert cfg["custom"] == 1

    taxes = get_tax_config(_Cursor([{"data": {"tva_taux": 18.5, "css_actif": False}}]))
    assert taxes == {
        "tva_taux": Decimal("18.5"),
        "css_taux": Decimal("1"),
        "tva_actif": True,
        "css_actif": False,
    }
