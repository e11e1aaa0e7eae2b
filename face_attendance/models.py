"""
SQLAlchemy ORM Models for registered face identities

Defines the face_identities table:
CREATE TABLE face_identities (
    identity_id VARCHAR(64) PRIMARY KEY,
    embedding JSON NOT NULL,
    quality_scores JSON NOT NULL,
    frames_analyzed INTEGER NOT NULL,
    valid_frames INTEGER NOT NULL,
    is_active BOOLEAN DEFAULT true,
    registered_at TIMESTAMP DEFAULT NOW(),
    updated_at TIMESTAMP DEFAULT NOW()
);
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, Boolean, DateTime, JSON

from face_attendance.database import Base


class FaceIdentityDB(Base):
    """
    SQLAlchemy model for face_identities table.

    One reference embedding per identity (employee user id).
    """
    __tablename__ = "face_identities"

    identity_id = Column(String(64), primary_key=True)
    embedding = Column(JSON, nullable=False)
    quality_scores = Column(JSON, nullable=False, default=dict)
    frames_analyzed = Column(Integer, nullable=False, default=0)
    valid_frames = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True, nullable=False)
    registered_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<FaceIdentityDB(identity_id={self.identity_id}, dims={len(self.embedding or [])}, is_active={self.is_active})>"
