import re
import uuid
from datetime import datetime, timezone
from typing import Dict, Any, List, Iterable
from graph.state import Lead, PRIORITIES

# Canonical field -> candidate source keys, tried in order (case-insensitive)
KEY_ALIASES: Dict[str, List[str]] = {
    "id": ["id", "lead_id", "ID", "Lead ID", "ref_no"],
    "client": ["client", "client_name", "name", "Customer Name", "Applicant"],
    "phone": ["phone", "mobile", "contact", "Mobile No"],
    "amount": ["amount", "loan_amount", "requested_amount", "amt", "Amount Requested"],
    "product_type": ["product_type", "type", "loan_type", "product", "Category"],
    "status": ["status", "current_status", "stage", "application_status"],
    "agent": ["agent", "agent_name", "sourced_by", "Agent ID"],
    "cibil_score": ["cibil_score", "cibil", "score", "credit_score"],
    "priority": ["priority", "urgency"],
    "note": ["note", "notes", "remarks", "Comments"],
    "created_at": ["created_at", "date", "timestamp", "Date"],
    "source_record_id": ["source_record_id", "row_id", "_row", "record_id"],
}

DEFAULTS: Dict[str, str] = {
    "client": "Unknown Client",
    "phone": "",
    "amount": "0",
    "product_type": "BL",
    "status": "Submitted",
    "agent": "System",
    "cibil_score": "",
    "priority": "NORMAL",
    "note": "",
}

# Rows tagged with these types are chat/log payloads, not leads
ADMIN_ROW_TYPES = {"CHAT", "LOG"}

_NUMBER = re.compile(r"\d+(?:\.\d*)?")


def generate_lead_id() -> str:
    return "L-" + uuid.uuid4().hex[:6].upper()


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def resolve(row: Dict[str, Any], candidates: Iterable[str]) -> Any:
    """Return the first non-empty value among `candidates`, ignoring key casing."""
    lowered = {}
    for key, value in row.items():
        lowered.setdefault(str(key).strip().lower(), value)

    for candidate in candidates:
        value = lowered.get(candidate.lower())
        if not _is_empty(value):
            return value
    return None


def parse_amount(raw: Any) -> float:
    """Parse amounts like "1,50,000", "₹ 2.5L" or 1200 into a number; 0.0 when nothing parses."""
    if raw is None or isinstance(raw, bool):
        return 0.0
    cleaned = re.sub(r"[^0-9.]", "", str(raw))
    match = _NUMBER.search(cleaned)
    return float(match.group()) if match else 0.0


def is_lead_row(raw: Any) -> bool:
    """False for chat/log records that share the leads feed."""
    if not isinstance(raw, dict):
        return True
    row_type = raw.get("type") or raw.get("TYPE") or raw.get("Type") or ""
    return str(row_type).strip().upper() not in ADMIN_ROW_TYPES


def normalize(raw: Any) -> Lead:
    """
    Map a heterogeneous raw record into the canonical Lead shape.

    Every field is coerced to a string except `value` (the parsed amount) and
    `events`. Malformed input never raises; missing fields fall back to
    defaults so one bad row cannot abort a sync.
    """
    row = raw if isinstance(raw, dict) else {}

    fields: Dict[str, str] = {}
    for name, candidates in KEY_ALIASES.items():
        value = resolve(row, candidates)
        fields[name] = "" if value is None else str(value).strip()

    lead_id = fields["id"] or generate_lead_id()
    for name, default in DEFAULTS.items():
        if not fields[name]:
            fields[name] = default

    priority = fields["priority"].upper()
    if priority not in PRIORITIES:
        priority = "NORMAL"

    events = row.get("events")
    if not isinstance(events, list):
        events = []

    return Lead(
        id=lead_id,
        client=fields["client"],
        phone=fields["phone"],
        amount=fields["amount"],
        value=parse_amount(fields["amount"]),
        product_type=fields["product_type"],
        status=fields["status"],
        agent=fields["agent"],
        cibil_score=fields["cibil_score"],
        priority=priority,
        note=fields["note"],
        created_at=fields["created_at"] or utc_now_iso(),
        source_record_id=fields["source_record_id"] or lead_id,
        events=[dict(e) for e in events if isinstance(e, dict)],
    )


def merge_sources(*sources: Iterable[Lead]) -> List[Lead]:
    """Dedupe leads by id across sources; later sources win, first-seen order is kept."""
    merged: Dict[str, Lead] = {}
    for source in sources:
        for lead in source:
            merged[lead["id"]] = lead
    return list(merged.values())
