"""SQLAlchemy models for text/link/image shares."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func

from database import Base


class ShareContent(Base):
    """Payload row referenced by a share; deleted before the share itself."""

    __tablename__ = "share_contents"
    __table_args__ = {"extend_existing": True}

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class ShareRecord(Base):
    __tablename__ = "shares"
    __table_args__ = {"extend_existing": True}

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    code = Column(String(16), nullable=False, unique=True, index=True)
    type = Column(String(16), nullable=False)
    content_id = Column(String(36), ForeignKey("share_contents.id", ondelete="CASCADE"), nullable=False, index=True)
    original_name = Column(String(255), nullable=True)
    mime_type = Column(String(255), nullable=True)
    size = Column(Integer, nullable=True)
    language = Column(String(32), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    password_hash = Column(String(255), nullable=True)
    burn_after_reading = Column(Boolean, nullable=False, default=False)
    view_count = Column(Integer, nullable=False, default=0)
    burned = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
