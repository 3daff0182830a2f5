from typing import TypedDict, Optional, List

# Reconciler lifecycle
IDLE = "idle"
LOADING = "loading"
RETRYING = "retrying"
LOADED = "loaded"
ERROR = "error"

# Structured failure reasons returned by write operations
NOT_FOUND = "not_found"
INVALID_TRANSITION = "invalid_transition"
WRITE_NOT_ACKNOWLEDGED = "write_not_acknowledged"

PRIORITIES = ("NORMAL", "URGENT", "HIGH_NET")


class LeadEvent(TypedDict, total=False):
    """One entry of a lead's journey (status change or note)."""
    kind: str                        # "status" | "note"
    status: str
    note: str
    by: str
    at: str                          # ISO-8601 UTC


class Lead(TypedDict):
    """Canonical lead record shared by every store and the UI."""
    id: str
    client: str
    phone: str
    amount: str                      # amount as the source formatted it
    value: float                     # parsed numeric amount
    product_type: str
    status: str                      # stage code
    agent: str                       # "System" / "" => visible to all agents
    cibil_score: str
    priority: str                    # NORMAL | URGENT | HIGH_NET
    note: str
    created_at: str
    source_record_id: str
    events: List[LeadEvent]


class WriteResult(TypedDict, total=False):
    success: bool
    lead_id: Optional[str]
    reason: Optional[str]            # NOT_FOUND | INVALID_TRANSITION | WRITE_NOT_ACKNOWLEDGED
    local_only: bool                 # saved locally, remote leg not confirmed
    message: str


class QueryResult(TypedDict):
    leads: List[Lead]
    total: int                       # leads in the cache before filtering
    excluded_all: bool               # agent filter removed every lead
    stale: bool                      # data comes from the last known good snapshot
