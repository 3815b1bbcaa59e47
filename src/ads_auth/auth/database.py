"""
Database models and session management for OAuth tokens.
"""
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, String, Text, UniqueConstraint, create_engine,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from ..config.settings import settings
from ..utils.logger import logger

Base = declarative_base()


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PlatformToken(Base):
    """One OAuth token per (user, platform)."""
    __tablename__ = "ads_tokens"
    __table_args__ = (UniqueConstraint("user_id", "platform", name="uq_ads_tokens_user_platform"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    platform = Column(String(32), nullable=False)
    encrypted_access_token = Column(Text, nullable=False)
    encrypted_refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    token_type = Column(String(32), nullable=True)
    scope = Column(Text, nullable=True)
    needs_reauth = Column(Boolean, default=False, nullable=False)
    last_refreshed = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)

    ad_accounts = relationship(
        "ConnectedAdAccount",
        back_populates="token",
        cascade="all, delete-orphan",
    )


class ConnectedAdAccount(Base):
    """Ad account (or Instagram business account) reachable with a token."""
    __tablename__ = "ads_connected_accounts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    token_id = Column(String, ForeignKey("ads_tokens.id", ondelete="CASCADE"), nullable=False, index=True)
    account_id = Column(String(128), nullable=False)
    name = Column(String, nullable=True)
    status = Column(String(32), nullable=True)
    currency = Column(String(8), nullable=True)
    kind = Column(String(32), nullable=False, default="ad_account")
    created_at = Column(DateTime(timezone=True), default=_now)

    token = relationship("PlatformToken", back_populates="ad_accounts")


def create_session_factory(database_url: Optional[str] = None) -> sessionmaker:
    """
    Create engine and tables, and return a session factory.

    Args:
        database_url: SQLAlchemy URL (defaults to DATABASE_URL)

    Returns:
        Configured sessionmaker
    """
    database_url = database_url or settings.database_url

    # Ensure directory exists for SQLite
    if database_url.startswith("sqlite:///"):
        db_path = database_url.replace("sqlite:///", "")
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False} if database_url.startswith("sqlite") else {}
    )

    # Create tables
    Base.metadata.create_all(bind=engine)

    logger.info(f"Database initialized: {engine.url.render_as_string(hide_password=True)}")
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,  # keep attributes accessible after commit
        bind=engine,
    )
