"""
External Calendar Credential Models
"""
from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from .database import Base


class CalendarCredential(Base):
    __tablename__ = "calendar_credentials"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(100), nullable=False, unique=True, index=True)  # "doctor:<id>" or "clinic:<id>"

    # OAuth tokens (encrypted)
    encrypted_refresh_token = Column(Text, nullable=False)
    token_fingerprint = Column(String(64), nullable=False)  # sha256 of the plain refresh token
    encrypted_access_token = Column(Text, nullable=True)
    access_token_expires_at = Column(DateTime, nullable=True)
    last_refreshed_at = Column(DateTime, nullable=True)

    # Google account info
    account_email = Column(String(255), nullable=True)
    calendar_id = Column(String(500), nullable=True, default="primary")

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
