"""SQLAlchemy models for uploaded files and their pre-commit sessions."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, String, BigInteger
from sqlalchemy.sql import func

from database import Base


class UploadSession(Base):
    """Reserved upload that has not been finalized yet."""

    __tablename__ = "upload_sessions"
    __table_args__ = {"extend_existing": True}

    code = Column(String(16), primary_key=True)
    storage_key = Column(String(512), nullable=False)
    original_name = Column(String(255), nullable=False)
    size = Column(BigInteger, nullable=False)
    mime_type = Column(String(255), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    max_downloads = Column(Integer, nullable=False, default=1)
    password_hash = Column(String(255), nullable=True)
    session_expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class UploadRecord(Base):
    __tablename__ = "file_metadata"
    __table_args__ = {"extend_existing": True}

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    code = Column(String(16), nullable=False, unique=True, index=True)
    storage_key = Column(String(512), nullable=False)
    original_name = Column(String(255), nullable=False)
    size = Column(BigInteger, nullable=False)
    mime_type = Column(String(255), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    # -1 means unlimited
    max_downloads = Column(Integer, nullable=False, default=1)
    download_count = Column(Integer, nullable=False, default=0)
    password_hash = Column(String(255), nullable=True)
    downloaded = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
