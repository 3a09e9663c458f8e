# backend/discount_engine/config.py
from __future__ import annotations
import os


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/discounts.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///discounts.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Combined discount percentage above which a manager must approve
    DISCOUNT_APPROVAL_THRESHOLD = float(os.environ.get("DISCOUNT_APPROVAL_THRESHOLD", "20"))

    DISCOUNT_CACHE_TTL_SECONDS = int(os.environ.get("DISCOUNT_CACHE_TTL_SECONDS", "300"))
    DISCOUNT_CURRENCY = os.environ.get("DISCOUNT_CURRENCY", "UGX")

    # Offset account credited for every discount, and the tax liability account
    DISCOUNT_REVENUE_ACCOUNT_CODE = os.environ.get("DISCOUNT_REVENUE_ACCOUNT_CODE", "4100")
    DISCOUNT_TAX_ACCOUNT_CODE = os.environ.get("DISCOUNT_TAX_ACCOUNT_CODE", "2200")


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = "test"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
