import os
from typing import List


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def _int(self, name: str, default: int) -> int:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            return int(raw)
        except ValueError:
            return default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        # Comma-separated list of allowed CORS origins for the admin frontend.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:5173", "http://127.0.0.1:5173"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"
        self.session_days = self._int("SESSION_DAYS", 7)
        # Days added to date_creation when the caller does not send a due/validity date.
        self.facture_echeance_jours = self._int("FACTURE_ECHEANCE_JOURS", 30)
        self.devis_validite_jours = self._int("DEVIS_VALIDITE_JOURS", 30)

settings = Settings()
