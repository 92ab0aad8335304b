from backend.app import db
from backend.app.config import Settings


def test_settings_read_env_with_fallbacks(monkeypatch):
    monkeypatch.setenv("CORS_ORIGINS", " https://billing.example , ,http://localhost:5173")
    monkeypatch.setenv("FACTURE_ECHEANCE_JOURS", "45")
    monkeypatch.setenv("DEVIS_VALIDITE_JOURS", "soon")
    monkeypatch.delenv("SESSION_DAYS", raising=False)

    s = Settings()

    assert s.cors_origins == ["https://billing.example", "http://localhost:5173"]
    assert s.facture_echeance_jours == 45
    assert s.devis_validite_jours == 30
    assert s.session_days == 7


def test_connection_string_is_owned_by_the_pool():
    # The pool reads the URL from the environment; Settings carries no second copy.
    assert not hasattr(Settings(), "db_url")
    assert db.DATABASE_URL
