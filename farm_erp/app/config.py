import os
from typing import List

class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def _truthy(self, raw: str) -> bool:
        return str(raw or "").strip().lower() in {"1", "true", "yes", "on"}

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        # Comma-separated list of allowed CORS origins for the web app.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:5173", "http://127.0.0.1:5173"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"
        # Dev tenant bootstrap endpoints. Explicit flag wins; otherwise on for local/dev only.
        raw_dev = (os.getenv("FARM_ERP_DEV_TOOLS") or "").strip()
        self.dev_tools_enabled = self._truthy(raw_dev) if raw_dev else self.env in {"local", "dev"}
        # Base URL used by farm_erp.client when no explicit api_base is given.
        self.api_base_url = (os.getenv("FARM_ERP_API_URL") or "http://localhost:8000").strip()

settings = Settings()
