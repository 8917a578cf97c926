"""
Database Models
"""
from jtd_pipeline.db.models.jtd import Jtd, JtdChannel, JtdStatus, PerformedByType
from jtd_pipeline.db.models.jtd_status_history import JtdStatusHistory
from jtd_pipeline.db.models.jtd_queue_message import JtdQueueMessage, QueueName
from jtd_pipeline.db.models.tenant_config import TenantConfig, TenantSourceConfig

__all__ = [
    "Jtd",
    "JtdChannel",
    "JtdStatus",
    "PerformedByType",
    "JtdStatusHistory",
    "JtdQueueMessage",
    "QueueName",
    "TenantConfig",
    "TenantSourceConfig",
]
