"""
JTD state machine
"""
from jtd_pipeline.state_machine.states import (
    JTD_TRANSITIONS,
    TERMINAL_STATUSES,
    CANCELLABLE_STATUSES,
    is_valid_transition,
)
from jtd_pipeline.state_machine.manager import JtdStateManager

__all__ = [
    "JTD_TRANSITIONS",
    "TERMINAL_STATUSES",
    "CANCELLABLE_STATUSES",
    "is_valid_transition",
    "JtdStateManager",
]
