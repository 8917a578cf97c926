"""
JTD Queue Message - lease-based queue entries for the Main Queue and the DLQ

Both queues share one table keyed by queue_name. A message is visible to
consumers when ``vt <= now``; leasing pushes ``vt`` into the future and bumps
``read_ct``.
"""
import enum
from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Index, UniqueConstraint,
)

from jtd_pipeline.core.clock import utcnow
from jtd_pipeline.db.database import Base


class QueueName(str, enum.Enum):
    MAIN = "jtd_main"
    DLQ = "jtd_dlq"


class JtdQueueMessage(Base):
    __tablename__ = "jtd_queue_messages"

    msg_id = Column(Integer, primary_key=True, autoincrement=True)
    queue_name = Column(String(20), nullable=False)
    jtd_id = Column(String(36), ForeignKey("jtd_jobs.id"), nullable=False, index=True)

    priority = Column(Integer, nullable=False, default=5)
    enqueued_at = Column(DateTime, nullable=False, default=utcnow)
    available_at = Column(DateTime, nullable=False, default=utcnow)  # not_before, FIFO key
    vt = Column(DateTime, nullable=False, default=utcnow)  # visible again at

    read_ct = Column(Integer, nullable=False, default=0)
    last_read_at = Column(DateTime, nullable=True)
    leased_by = Column(String(100), nullable=True)

    __table_args__ = (
        # at most one entry per job per queue
        UniqueConstraint("queue_name", "jtd_id", name="uq_jtd_queue_messages_queue_job"),
        Index("ix_jtd_queue_messages_poll", "queue_name", "vt", "priority", "available_at"),
    )
