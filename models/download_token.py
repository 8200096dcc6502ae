"""SQLAlchemy model for single-use download tokens."""

from sqlalchemy import Boolean, Column, DateTime, String
from sqlalchemy.sql import func

from database import Base


class DownloadToken(Base):
    __tablename__ = "download_tokens"
    __table_args__ = {"extend_existing": True}

    token = Column(String(64), primary_key=True)
    file_code = Column(String(16), nullable=False, index=True)
    delete_after = Column(Boolean, nullable=False, default=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
