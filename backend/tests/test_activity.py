import json
from contextlib import nullcontext

from backend.app.activity import notify, write_audit


class _Conn:
    def __init__(self):
        self.savepoints = 0

    def transaction(self):
        self.savepoints += 1
        return nullcontext()


class _Cursor:
    def __init__(self, fail=False):
        self.connection = _Conn()
        self.fail = fail
        self.executed: list[tuple[str, tuple]] = []

    def execute(self, sql, params=()):
        if self.fail:
            raise RuntimeError("relation \"notifications\" does not exist")
        self.executed.append((sql, tuple(params)))


def test_notify_writes_inside_a_savepoint():
    cur = _Cursor()
    assert notify(cur, type="facture_creee", titre="Nouvelle facture", message="FAC-2025-0001", entity_id="f1") is True
    assert cur.connection.savepoints == 1
    assert "INSERT INTO notifications" in cur.executed[0][0]


def test_side_channel_failures_are_logged_not_raised(log_events):
    cur = _Cursor(fail=True)
    assert notify(cur, type="facture_payee", titre="t", message="m") is False
    assert write_audit(cur, user_id="u1", action="paiement_create", entity_type="paiement") is False

    assert [(r["level"], r["event"]) for r in log_events()] == [
        ("warning", "notification.failed"),
        ("warning", "audit.failed"),
    ]


def test_audit_details_are_serialized_as_json():
    cur = _Cursor()
    write_audit(cur, user_id="u1", action="config_taxes_update", entity_type="configuration", details={"tva_taux": 18})
    assert json.loads(cur.executed[0][1][-1]) == {"tva_taux": 18}
