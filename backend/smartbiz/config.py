# backend/smartbiz/config.py
from __future__ import annotations
import os


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/smartbiz.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///smartbiz.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    CURRENCY = os.environ.get("CURRENCY", "VND")

    # QR payment window and terminal poll cadence
    QR_EXPIRY_MINUTES = int(os.environ.get("QR_EXPIRY_MINUTES", "15"))
    QR_POLL_INTERVAL_SECONDS = float(os.environ.get("QR_POLL_INTERVAL_SECONDS", "3"))

    # Empty URL selects the offline provider (no external calls)
    PAYMENT_GATEWAY_URL = os.environ.get("PAYMENT_GATEWAY_URL", "")
    PAYMENT_GATEWAY_CLIENT_ID = os.environ.get("PAYMENT_GATEWAY_CLIENT_ID", "")
    PAYMENT_GATEWAY_API_KEY = os.environ.get("PAYMENT_GATEWAY_API_KEY", "")
    PAYMENT_GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("PAYMENT_GATEWAY_TIMEOUT_SECONDS", "10"))
    PAYMENT_WEBHOOK_SECRET = os.environ.get("PAYMENT_WEBHOOK_SECRET", "")

    # Origins allowed to call the API from a browser (POS front end dev servers)
    CORS_ALLOWED_ORIGINS = tuple(
        o.strip()
        for o in os.environ.get(
            "CORS_ALLOWED_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ).split(",")
        if o.strip()
    )
