"""
JTD Status History - append-only audit trail of every transition

Deliberately not a foreign key to jtd_jobs: history outlives the job row.
Rows are inserted by the state manager only, never updated or deleted.
"""
from sqlalchemy import Column, Integer, String, DateTime, Float, Text, Index

from jtd_pipeline.core.clock import utcnow
from jtd_pipeline.db.database import Base


class JtdStatusHistory(Base):
    __tablename__ = "jtd_status_history"

    id = Column(Integer, primary_key=True, index=True)
    jtd_id = Column(String(36), nullable=False)

    from_status = Column(String(20), nullable=True)  # null on the first entry
    to_status = Column(String(20), nullable=False)
    duration_seconds = Column(Float, nullable=False, default=0.0)  # time in from_status

    performed_by_type = Column(String(20), nullable=False)
    performed_by_name = Column(String(100), nullable=True)
    reason = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_jtd_status_history_jtd_created", "jtd_id", "created_at"),
    )
