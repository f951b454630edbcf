class LeadflowError(Exception):
    """Base class for errors raised by the lead nurture engine."""


class LeadNotFound(LeadflowError):
    def __init__(self, tenant_id: str, lead_id):
        super().__init__(f"Lead {lead_id} not found for tenant {tenant_id}")
        self.tenant_id = tenant_id
        self.lead_id = lead_id


class IllegalTransition(LeadflowError):
    """Raised when no status can move to the requested target status."""
