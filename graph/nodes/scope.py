from typing import Dict, Any, List, Optional, Tuple
from graph.state import Lead
from loguru import logger

ADMIN_SENTINEL = "ADMIN"
SHARED_AGENTS = {"SYSTEM", ""}

# Statuses counted as approved on an agent's dashboard
APPROVED_STATUSES = {"Sanctioned", "Offer_Accepted", "Agreement_Stage", "Disbursed"}


def _agent_key(value: Optional[str]) -> str:
    return (value or "").strip().upper()


def is_admin(agent: Optional[str]) -> bool:
    return _agent_key(agent) in ("", ADMIN_SENTINEL)


def visible_to(lead: Lead, agent: str) -> bool:
    """Agents see their own leads plus shared/unassigned ones."""
    owner = _agent_key(lead.get("agent"))
    return owner == _agent_key(agent) or owner in SHARED_AGENTS


def filter_leads(
    leads: List[Lead],
    agent: Optional[str] = None,
    status: Optional[str] = None,
    product_type: Optional[str] = None,
) -> Tuple[List[Lead], bool]:
    """
    Apply the agent scope and optional status/product filters.

    Returns the filtered leads (newest first) and a flag telling whether the
    agent scope alone excluded every lead although leads exist.
    """
    results = list(leads)
    excluded_all = False

    if not is_admin(agent):
        scoped = [l for l in results if visible_to(l, agent)]
        if not scoped and results:
            excluded_all = True
            logger.warning(
                f"Agent filter '{agent}' excluded all {len(results)} leads; "
                f"check agent names in the source data"
            )
        results = scoped

    if status:
        results = [l for l in results if l.get("status") == status]
    if product_type:
        results = [l for l in results if _agent_key(l.get("product_type")) == _agent_key(product_type)]

    results.sort(key=lambda l: l.get("created_at", ""), reverse=True)
    return results, excluded_all


def agent_metrics(leads: List[Lead], agent: str) -> Dict[str, Any]:
    """Dashboard numbers for one agent's own leads."""
    own = [l for l in leads if _agent_key(l.get("agent")) == _agent_key(agent)]
    total = len(own)
    approved = len([l for l in own if l.get("status") in APPROVED_STATUSES])
    revenue = sum(l.get("value", 0.0) for l in own if l.get("status") == "Disbursed")

    return {
        "agent": agent,
        "leads_submitted": total,
        "leads_approved": approved,
        "conversion_rate": round(approved / total * 100, 1) if total else 0.0,
        "total_revenue": revenue,
    }
