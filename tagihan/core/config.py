from __future__ import annotations

import os


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key")
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///tagihan.db",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    LOCK_TIMEOUT_MINUTES = int(os.getenv("LOCK_TIMEOUT_MINUTES", "30"))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    DEFAULT_LANG = os.getenv("DEFAULT_LANG", "id")
