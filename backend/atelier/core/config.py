# backend/atelier/core/config.py
from pydantic_settings import BaseSettings
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
import secrets
from typing import List


class Settings(BaseSettings):
    # --- Security / JWT (tokens are issued elsewhere, we only decode) ---
    SECRET_KEY: str = secrets.token_urlsafe(32)  # set via ENV in prod
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24

    # --- Database ---
    DATABASE_URL: str = "sqlite:///./atelier.db"

    # --- CORS ---
    CORS_ALLOW_ORIGINS: List[str] = ["*"]

    # --- Logging ---
    LOG_LEVEL: str = "INFO"

    # --- Lifecycle windows ---
    PROPOSAL_RESPONSE_HOURS: int = 72
    TICKET_RESPONSE_HOURS: int = 48
    RESOLUTION_COUNTER_HOURS: int = 24
    UPLOAD_REVIEW_HOURS: int = 24
    CHANGE_DEADLINE_MIN_EXTENSION_HOURS: int = 24

    # --- Contract policy defaults (used when a listing snapshot omits them) ---
    DEFAULT_GRACE_DAYS: int = 7
    DEFAULT_LATE_PENALTY_PERCENT: int = 10

    # --- Text requirements ---
    RESOLUTION_NOTE_MIN_LENGTH: int = 50
    RESOLUTION_DESCRIPTION_MIN_LENGTH: int = 10
    MAX_REFERENCE_IMAGES: int = 5

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()

# SQLite needs check_same_thread off for the threaded test client
connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

# SQLAlchemy Engine & Session
engine = create_engine(settings.DATABASE_URL, connect_args=connect_args, future=True)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)

