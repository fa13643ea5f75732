# backend/salesledger/config.py
from __future__ import annotations
import os


def _csv(value: str) -> frozenset[str]:
    return frozenset(part.strip().upper() for part in value.split(",") if part.strip())


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/salesledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",  # optional alternative location
        "sqlite:///salesledger.sqlite3",  # default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Unit-of-work conflict handling (deadlocks, busy database, stale versions)
    COMMIT_RETRY_ATTEMPTS = int(os.environ.get("COMMIT_RETRY_ATTEMPTS", "3"))
    COMMIT_RETRY_BACKOFF = float(os.environ.get("COMMIT_RETRY_BACKOFF", "0.1"))

    # Money is stored and validated with this many decimal places
    MONEY_PLACES = int(os.environ.get("MONEY_PLACES", "2"))
    CURRENCY = os.environ.get("CURRENCY", "NGN")

    # Units that can only be sold in whole numbers
    PIECE_UNITS = _csv(
        os.environ.get(
            "PIECE_UNITS",
            "PIECE,BAG,BOX,CARTON,PACK,ROLL,SHEET,BUNDLE,PALLET",
        )
    )

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Product categories that may be sold as WHOLESALE (direct from supplier)
    WHOLESALE_CATEGORIES = _csv(os.environ.get("WHOLESALE_CATEGORIES", "CEMENT"))
