# backend/possync/config.py
from __future__ import annotations
import os

DEV_JWT_SECRET = "dev-jwt-secret-change-me"


class Config:
    # development | testing | production (role of NODE_ENV in the JS stack)
    APP_ENV = os.environ.get("APP_ENV", "production")

    # Required outside development/testing; create_app() refuses to start without it
    JWT_SECRET = os.environ.get("JWT_SECRET")
    JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///possync.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Max rows returned by one modifiedSince page
    PULL_PAGE_LIMIT = int(os.environ.get("PULL_PAGE_LIMIT", "500"))
