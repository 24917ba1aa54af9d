from __future__ import annotations

import os
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field


load_dotenv()


def _split_origins(raw: Optional[str]) -> List[str]:
    if not raw:
        return ["*"]
    origins = [item.strip() for item in raw.split(",") if item.strip()]
    return origins or ["*"]


class Settings(BaseModel):
    """Application settings loaded from environment variables.

    Built once at process entry and handed to the store, the LLM client and
    the app factory. Nothing below ``app.main`` reads the environment.
    """

    model_config = ConfigDict(frozen=True)

    host: str = "0.0.0.0"
    port: int = 5000
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    google_api_key: Optional[str] = None
    sessions_dir: str = "sessions"
    gemini_model: str = "gemini-2.0-flash"
    temperature: float = 0.3
    top_p: float = 0.9
    llm_timeout: float = 60.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "5000")),
            cors_origins=_split_origins(os.getenv("CORS_ORIGIN")),
            google_api_key=os.getenv("API_KEY") or os.getenv("GOOGLE_API_KEY") or None,
            sessions_dir=os.getenv("SESSIONS_DIR", "sessions"),
            gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.0-flash"),
            temperature=float(os.getenv("MODEL_TEMPERATURE", "0.3")),
            top_p=float(os.getenv("MODEL_TOP_P", "0.9")),
            llm_timeout=float(os.getenv("LLM_TIMEOUT_SECONDS", "60")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
