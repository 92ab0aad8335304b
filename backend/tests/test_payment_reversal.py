import contextlib
from decimal import Decimal

from backend.app import payments


D = Decimal


class _Conn:
    def transaction(self):
        return contextlib.nullcontext()


class _LedgerCursor:
    """
    In-memory stand-in for the handful of statements a payment and its
    cancellation run: one invoice, one client, one bank account.
    """

    def __init__(self, facture, banque, client):
        self.connection = _Conn()
        self.facture = facture
        self.banque = banque
        self.client = client
        self.paiements = {}
        self.mouvements = []
        self._result = None

    def execute(self, sql, params=()):
        s = " ".join(sql.split())
        self._result = None
        if s.startswith("SELECT id, nom, solde, actif FROM banques"):
            self._result = dict(self.banque)
        elif s.startswith("UPDATE banques SET solde = solde + %s"):
            self.banque["solde"] += params[0]
            self._result = {"solde": self.banque["solde"]}
        elif s.startswith("SELECT * FROM factures"):
            self._result = dict(self.facture)
        elif s.startswith("UPDATE factures SET montant_paye = %s, statut = %s"):
            self.facture["montant_paye"], self.facture["statut"] = params[0], params[1]
        elif s.startswith("SELECT COALESCE(SUM(montant_ttc), 0)"):
            live = self.facture["statut"] != "annulee"
            self._result = {
                "total_ttc": self.facture["montant_ttc"] if live else D("0"),
                "total_paye": self.facture["montant_paye"] if live else D("0"),
            }
        elif s.startswith("UPDATE clients SET solde = %s"):
            self.client["solde"] = params[0]
            self._result = {"id": params[1]}
        elif s.startswith("INSERT INTO paiements"):
            pid = f"p{len(self.paiements) + 1}"
            facture_id, ordre_id, client_id, montant, _date, mode, reference, banque_id = params[:8]
            self.paiements[pid] = {
                "id": pid,
                "facture_id": facture_id,
                "ordre_id": ordre_id,
                "client_id": client_id,
                "montant": montant,
                "mode_paiement": mode,
                "reference": reference,
                "banque_id": banque_id,
            }
            self._result = {"id": pid}
        elif s.startswith("SELECT id, facture_id, ordre_id, client_id, montant"):
            row = self.paiements.get(params[0])
            self._result = dict(row) if row else None
        elif s.startswith("DELETE FROM paiements"):
            self.paiements.pop(params[0], None)
        elif s.startswith("INSERT INTO mouvements_caisse"):
            self.mouvements.append({"type": params[0], "montant": params[1], "banque_id": params[5]})
            self._result = {"id": f"m{len(self.mouvements)}"}
        elif s.startswith("INSERT INTO notifications") or s.startswith("INSERT INTO audit_logs"):
            pass
        else:
            raise AssertionError(f"unexpected statement: {s}")

    def fetchone(self):
        return self._result


def _ledger():
    return _LedgerCursor(
        facture={
            "id": "f1",
            "numero": "FAC-2025-0012",
            "client_id": "c1",
            "statut": "validee",
            "montant_ttc": D("119000.00"),
            "montant_paye": D("0.00"),
        },
        banque={"id": "b1", "nom": "BGFI", "solde": D("500000.00"), "actif": True},
        client={"id": "c1", "solde": D("119000.00")},
    )


def test_cancelling_a_payment_restores_invoice_bank_and_client():
    cur = _ledger()

    created = payments.create_payment(
        cur,
        {"facture_id": "f1", "montant": D("119000.00"), "mode_paiement": "virement", "banque_id": "b1"},
        user_id="u1",
    )

    assert created["statut"] == "payee"
    assert cur.facture["montant_paye"] == D("119000.00")
    assert cur.banque["solde"] == D("619000.00")
    assert cur.client["solde"] == D("0.00")

    cancelled = payments.cancel_payment(cur, created["id"], user_id="u1")

    assert cancelled["statut"] == "validee"
    assert cur.facture["montant_paye"] == D("0.00")
    assert cur.facture["statut"] == "validee"
    assert cur.banque["solde"] == D("500000.00")
    assert cur.client["solde"] == D("119000.00")
    assert cur.paiements == {}
    assert [(m["type"], m["montant"], m["banque_id"]) for m in cur.mouvements] == [
        ("entree", D("119000.00"), "b1"),
        ("sortie", D("119000.00"), "b1"),
    ]


def test_partial_payment_round_trip_returns_to_previous_state():
    cur = _ledger()
    cur.facture.update(statut="partiellement_payee", montant_paye=D("19000.00"))
    cur.client["solde"] = D("100000.00")

    created = payments.create_payment(cur, {"facture_id": "f1", "montant": D("40000.00"), "banque_id": "b1"})
    assert cur.facture["montant_paye"] == D("59000.00")
    assert cur.client["solde"] == D("60000.00")

    payments.cancel_payment(cur, created["id"])

    assert cur.facture["montant_paye"] == D("19000.00")
    assert cur.facture["statut"] == "partiellement_payee"
    assert cur.banque["solde"] == D("500000.00")
    assert cur.client["solde"] == D("100000.00")
