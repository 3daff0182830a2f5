import os
import json
import copy
from typing import Dict, Any, List, Optional
import redis
from loguru import logger
from tools.base import WriteNotAcknowledged

LEADS = "leads"
PENDING = "pending"
BACKUP = "backup"

SEED_LEADS = [
    {
        "id": "L-SEED-01",
        "client": "Rajesh Kumar",
        "amount": "5000000",
        "status": "Submitted",
        "agent": "AGENT_001",
        "type": "BL",
        "cibil": "750",
        "notes": "High priority seed lead",
    },
    {
        "id": "L-SEED-02",
        "client": "TechFlow Systems",
        "amount": "12000000",
        "status": "Credit_Review",
        "agent": "AGENT_001",
        "type": "LAP",
        "cibil": "810",
        "notes": "Documents collected",
    },
    {
        "id": "L-SEED-03",
        "client": "Amitabh Validot",
        "amount": "2500000",
        "status": "Rejected",
        "agent": "AGENT_002",
        "type": "PL",
        "cibil": "620",
        "notes": "Low CIBIL score",
    },
]

_MISSING = object()


class LocalStore:
    """
    Local durable store: whole-array JSON tables kept in Redis.

    Every table is mirrored in process memory; when Redis is not configured
    or unreachable the memory copy is the store.
    """

    name = "local"

    def __init__(self, redis_url=_MISSING, prefix: str = "ldb"):
        if redis_url is _MISSING:
            redis_url = os.getenv("REDIS_URL", "redis://localhost:6379")
        self.prefix = prefix
        self._tables: Dict[str, List[Dict[str, Any]]] = {}
        self.r = None

        if not redis_url:
            logger.info("No Redis URL configured, local store runs in memory")
            return

        try:
            self.r = redis.from_url(redis_url)
            # Test connection
            self.r.ping()
            logger.info("Redis connection established successfully")
        except Exception as e:
            logger.error(f"Redis connection failed: {e}")
            # Fallback to in-memory storage
            self.r = None

    def _key(self, table: str) -> str:
        return f"{self.prefix}:{table}"

    def _load(self, table: str) -> List[Dict[str, Any]]:
        if self.r is not None:
            try:
                raw = self.r.get(self._key(table))
                if raw is not None:
                    rows = json.loads(raw)
                    if isinstance(rows, list):
                        self._tables[table] = rows
                    else:
                        logger.warning(f"Ignoring non-array payload stored under {self._key(table)}")
            except (redis.RedisError, ValueError) as e:
                logger.error(f"Failed to load {table} from Redis, using memory copy: {e}")
        return self._tables.setdefault(table, [])

    def _save(self, table: str, rows: List[Dict[str, Any]]) -> None:
        self._tables[table] = rows
        if self.r is None:
            return
        try:
            self.r.set(self._key(table), json.dumps(rows))
        except redis.RedisError as e:
            logger.error(f"Failed to persist {table} to Redis, kept in memory: {e}")

    # SELECT * FROM table
    def select(self, table: str) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._load(table))

    # INSERT INTO table
    def insert(self, table: str, rows) -> List[Dict[str, Any]]:
        if isinstance(rows, dict):
            rows = [rows]
        current = self._load(table)
        self._save(table, current + copy.deepcopy(list(rows)))
        logger.info(f"LocalDB: inserted {len(rows)} rows into {table}")
        return rows

    # UPDATE table SET ... WHERE id = ...
    def update(self, table: str, row_id: str, updates: Dict[str, Any]) -> bool:
        found = False
        rows = []
        for row in self._load(table):
            if row.get("id") == row_id:
                found = True
                row = {**row, **copy.deepcopy(updates)}
            rows.append(row)
        if found:
            self._save(table, rows)
            logger.info(f"LocalDB: updated record {row_id} in {table}")
        return found

    def upsert(self, table: str, row: Dict[str, Any]) -> None:
        if not self.update(table, row.get("id"), row):
            self.insert(table, row)

    def remove(self, table: str, row_id: str) -> bool:
        rows = self._load(table)
        kept = [row for row in rows if row.get("id") != row_id]
        if len(kept) == len(rows):
            return False
        self._save(table, kept)
        return True

    def save_snapshot(self, rows: List[Dict[str, Any]], name: str = BACKUP) -> None:
        """Replace the last-known-good snapshot."""
        self._save(name, copy.deepcopy(list(rows)))

    def load_snapshot(self, name: str = BACKUP) -> List[Dict[str, Any]]:
        return self.select(name)

    def seed(self) -> bool:
        """Insert the demo leads when the leads table is empty."""
        if self._load(LEADS):
            return False
        logger.info("LocalDB: seeding initial data")
        self.insert(LEADS, SEED_LEADS)
        return True

    async def fetch_all(self) -> List[Dict[str, Any]]:
        return self.select(LEADS)

    async def write_record(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a CREATE / UPDATE_STATUS / ADD_NOTE packet to the leads table."""
        action = record.get("action") or "CREATE"
        lead_id = record.get("id")
        if not lead_id:
            raise WriteNotAcknowledged("record has no id")

        if action == "CREATE":
            row = {k: v for k, v in record.items() if k != "action"}
            self.upsert(LEADS, row)
        elif action == "UPDATE_STATUS":
            updates = {"status": record.get("status")}
            if "events" in record:
                updates["events"] = record["events"]
            if not self.update(LEADS, lead_id, updates):
                raise WriteNotAcknowledged(f"lead {lead_id} not found in local table")
        elif action == "ADD_NOTE":
            updates = {"note": record.get("note", "")}
            if "events" in record:
                updates["events"] = record["events"]
            if not self.update(LEADS, lead_id, updates):
                raise WriteNotAcknowledged(f"lead {lead_id} not found in local table")
        else:
            raise WriteNotAcknowledged(f"unsupported action {action}")

        return {"status": "ok", "id": lead_id, "action": action}
