"""
JTD lifecycle states and the legal transition table
"""
from jtd_pipeline.db.models.jtd import JtdStatus


# State transitions mapping
JTD_TRANSITIONS = {
    # Admission
    JtdStatus.CREATED: [JtdStatus.PENDING, JtdStatus.CANCELLED],
    JtdStatus.PENDING: [JtdStatus.QUEUED, JtdStatus.CANCELLED],

    # Waiting in the Main Queue
    JtdStatus.QUEUED: [JtdStatus.SCHEDULED, JtdStatus.PROCESSING, JtdStatus.CANCELLED],
    JtdStatus.SCHEDULED: [JtdStatus.QUEUED, JtdStatus.CANCELLED],  # scheduler fires at due time

    # Delivery attempt (sent / dead_letter also reachable by admin force-complete)
    JtdStatus.PROCESSING: [JtdStatus.SENT, JtdStatus.FAILED, JtdStatus.DEAD_LETTER],

    # Retry or give up
    JtdStatus.FAILED: [JtdStatus.QUEUED, JtdStatus.DEAD_LETTER],
    JtdStatus.DEAD_LETTER: [JtdStatus.QUEUED],  # admin requeue from DLQ

    JtdStatus.SENT: [],
    JtdStatus.CANCELLED: [],
}

TERMINAL_STATUSES = frozenset({JtdStatus.SENT, JtdStatus.CANCELLED})

CANCELLABLE_STATUSES = frozenset({
    JtdStatus.CREATED,
    JtdStatus.PENDING,
    JtdStatus.QUEUED,
    JtdStatus.SCHEDULED,
})

# completed_at is only set while the job sits in one of these
COMPLETED_STATUSES = frozenset({JtdStatus.SENT, JtdStatus.DEAD_LETTER, JtdStatus.CANCELLED})


def is_valid_transition(current: JtdStatus, target: JtdStatus) -> bool:
    return target in JTD_TRANSITIONS.get(current, [])
