"""
Database models for the persistent cache backend
SQLAlchemy ORM model for TTL-keyed cache records
"""
from sqlalchemy import Column, Float, JSON, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class CacheRecord(Base):
    """
    One key/value pair of the persistent store.
    Timestamps are epoch seconds; expires_at NULL means no expiry
    """
    __tablename__ = "cache_records"

    key = Column(String, primary_key=True)
    value = Column(JSON, nullable=False)
    created_at = Column(Float, nullable=False)
    expires_at = Column(Float, nullable=True, index=True)

    def __repr__(self):
        return f"<CacheRecord(key='{self.key}', expires_at={self.expires_at})>"
