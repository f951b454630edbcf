"""
Lead Lifecycle States
Every lead is in exactly ONE of these states at any time
"""

from enum import Enum

from leadflow.core.errors import IllegalTransition


class LeadStatus(str, Enum):
    NEW = "new"                    # Just ingested, first touch pending
    CONTACTED = "contacted"        # At least one touch point sent
    CHAT_ACTIVE = "chat_active"    # Customer responded (terminal)
    LOST = "lost"                  # Sequence exhausted (terminal)


class LeadEvent(str, Enum):
    LEAD_CREATED = "LEAD_CREATED"
    TOUCH_POINT_SCHEDULED = "TOUCH_POINT_SCHEDULED"
    TOUCH_POINT_SENT = "TOUCH_POINT_SENT"
    SEQUENCE_EXHAUSTED = "SEQUENCE_EXHAUSTED"
    CUSTOMER_RESPONDED = "CUSTOMER_RESPONDED"
    STATUS_CHANGED = "STATUS_CHANGED"


# Statuses the touch-point processor still works on
OPEN_STATUSES = frozenset({LeadStatus.NEW, LeadStatus.CONTACTED})

# Terminal states - once a lead reaches these, outreach never resumes
TERMINAL_STATUSES = frozenset({LeadStatus.CHAT_ACTIVE, LeadStatus.LOST})

TRANSITIONS = {
    # (current_state, event) → next_state
    (LeadStatus.NEW, LeadEvent.TOUCH_POINT_SENT): LeadStatus.CONTACTED,
    (LeadStatus.CONTACTED, LeadEvent.TOUCH_POINT_SENT): LeadStatus.CONTACTED,

    (LeadStatus.NEW, LeadEvent.SEQUENCE_EXHAUSTED): LeadStatus.LOST,
    (LeadStatus.CONTACTED, LeadEvent.SEQUENCE_EXHAUSTED): LeadStatus.LOST,

    (LeadStatus.NEW, LeadEvent.CUSTOMER_RESPONDED): LeadStatus.CHAT_ACTIVE,
    (LeadStatus.CONTACTED, LeadEvent.CUSTOMER_RESPONDED): LeadStatus.CHAT_ACTIVE,
}


def source_statuses(target: LeadStatus) -> frozenset:
    """All statuses from which some event leads to `target`."""
    sources = frozenset(
        current for (current, _event), reached in TRANSITIONS.items() if reached == LeadStatus(target)
    )
    if not sources:
        raise IllegalTransition(f"No transition leads to {LeadStatus(target).value}")
    return sources
