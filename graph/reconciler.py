import os
import time
import copy
import asyncio
from typing import Dict, Any, List, Optional, Callable
from loguru import logger

from graph.state import (
    Lead, LeadEvent, WriteResult, QueryResult,
    IDLE, LOADING, RETRYING, LOADED, ERROR,
    NOT_FOUND, INVALID_TRANSITION, WRITE_NOT_ACKNOWLEDGED,
)
from graph.workflow import WorkflowGraph, Stage, SUBMITTED
from graph.nodes.normalize import normalize, is_lead_row, merge_sources, utc_now_iso
from graph.nodes.scope import filter_leads, agent_metrics
from tools.base import LeadStore, SourceUnavailable, StoreError
from tools.local_db import LocalStore, PENDING
from tools.cloud import CloudStore

LOCAL_DB = "LOCAL_DB"

Subscriber = Callable[[str, Dict[str, Any]], None]


class LeadReconciler:
    """
    Single entry point for lead data across the in-memory cache, the local
    durable store and the active backing store.

    The active store is either the local store itself or a remote store.
    Writes are applied to the cache first and then propagated; sync
    replaces the cache wholesale from the active store.
    """

    def __init__(
        self,
        store: LeadStore,
        local: Optional[LocalStore] = None,
        workflow: Optional[WorkflowGraph] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        poll_interval: float = 30.0,
    ):
        if local is None:
            if not isinstance(store, LocalStore):
                raise ValueError("A LocalStore is required when the active store is remote")
            local = store
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")

        self.store = store
        self.local = local
        self.workflow = workflow or WorkflowGraph()
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.poll_interval = poll_interval

        self.state = IDLE
        self.last_error: Optional[str] = None
        self.last_sync: Optional[float] = None
        self.stale = False

        self._cache: List[Lead] = []
        self._sync_seq = 0
        self._applied_seq = 0
        self._subscribers: List[Subscriber] = []
        self._poll_task: Optional[asyncio.Task] = None

    @property
    def mode(self) -> str:
        return self.store.name

    # --- observers ---

    def subscribe(self, callback: Subscriber) -> None:
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event, payload)
            except Exception as e:
                logger.error(f"Subscriber {callback!r} failed on {event}: {e}")

    def _set_state(self, state: str) -> None:
        if state == self.state:
            return
        previous, self.state = self.state, state
        logger.debug(f"Reconciler state {previous} -> {state}")
        self._emit("state_changed", {"state": state, "previous": previous, "error": self.last_error})

    # --- reads ---

    def leads(self) -> List[Lead]:
        return copy.deepcopy(self._cache)

    def _find(self, lead_id: str) -> Optional[Lead]:
        for lead in self._cache:
            if lead["id"] == lead_id:
                return lead
        return None

    def get(self, lead_id: str) -> Optional[Lead]:
        lead = self._find(lead_id)
        return copy.deepcopy(lead) if lead else None

    def next_options(self, lead_id: str) -> List[Stage]:
        lead = self._find(lead_id)
        return self.workflow.next_options(lead["status"]) if lead else []

    def query(
        self,
        agent: Optional[str] = None,
        status: Optional[str] = None,
        product_type: Optional[str] = None,
    ) -> QueryResult:
        """
        Agent-scoped view of the cache.

        `excluded_all` tells the caller that the agent filter hid every lead
        even though the cache is not empty, so it can report that instead of
        an empty pipeline.
        """
        leads, excluded_all = filter_leads(self._cache, agent=agent, status=status, product_type=product_type)
        return QueryResult(
            leads=copy.deepcopy(leads),
            total=len(self._cache),
            excluded_all=excluded_all,
            stale=self.stale,
        )

    def metrics(self, agent: str) -> Dict[str, Any]:
        return agent_metrics(self._cache, agent)

    # --- sync ---

    async def sync(self) -> List[Lead]:
        """
        Refresh the cache from the active store.

        Fetch failures are retried with exponential backoff; once retries are
        exhausted the reconciler enters the error state and keeps serving the
        last known good leads.
        """
        self._sync_seq += 1
        seq = self._sync_seq
        self._set_state(LOADING)

        attempt = 0
        while True:
            try:
                rows = await self.store.fetch_all()
                break
            except SourceUnavailable as e:
                if self._superseded(seq):
                    logger.info(f"Sync #{seq} failed ({e}) after sync #{self._applied_seq} landed; dropping it")
                    return self.leads()
                self.last_error = str(e)
                if attempt >= self.max_retries:
                    return self._sync_failed()
                delay = self.retry_delay * (2 ** attempt)
                attempt += 1
                logger.warning(
                    f"Sync from {self.mode} failed ({e}); retry {attempt}/{self.max_retries} in {delay:.1f}s"
                )
                self._set_state(RETRYING)
                await asyncio.sleep(delay)
                if self._superseded(seq):
                    logger.info(f"Sync #{seq} superseded by sync #{self._applied_seq} while retrying")
                    return self.leads()
                self._set_state(LOADING)

        leads = [normalize(row) for row in rows if is_lead_row(row)]
        skipped = len(rows) - len(leads)
        pending = [normalize(row) for row in self.local.select(PENDING)]
        leads = merge_sources(leads, pending)

        if self._superseded(seq):
            logger.info(f"Discarding result of sync #{seq}; sync #{self._applied_seq} already landed")
            return self.leads()

        self._applied_seq = seq
        self._cache = leads
        self.stale = False
        self.last_error = None
        self.last_sync = time.time()
        self.local.save_snapshot(leads)

        logger.info(
            f"Sync #{seq} from {self.mode}: {len(leads)} leads "
            f"({skipped} admin rows skipped, {len(pending)} pending local writes)"
        )
        self._set_state(LOADED)
        self._emit("synced", {"count": len(leads), "pending": len(pending)})
        return self.leads()

    def _superseded(self, seq: int) -> bool:
        return seq < self._applied_seq

    def _sync_failed(self) -> List[Lead]:
        self.stale = True
        if not self._cache:
            self._cache = [normalize(row) for row in self.local.load_snapshot()]

        logger.error(
            f"Sync from {self.mode} failed after {self.max_retries} retries: {self.last_error}; "
            f"serving {len(self._cache)} leads from last known good data"
        )
        self._set_state(ERROR)
        self._emit("sync_failed", {"error": self.last_error, "cached": len(self._cache)})
        return self.leads()

    async def retry(self) -> List[Lead]:
        """Manual retry; the only way out of the error state besides sync()."""
        logger.info(f"Manual retry requested (state: {self.state})")
        return await self.sync()

    async def force_sync(self) -> List[Lead]:
        return await self.sync()

    # --- polling ---

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def start_polling(self, interval: Optional[float] = None) -> asyncio.Task:
        """Start the single periodic sync task; a running task is reused."""
        if self.is_polling:
            logger.info("Polling already running")
            return self._poll_task

        interval = self.poll_interval if interval is None else interval
        if interval <= 0:
            raise ValueError("Polling interval must be positive")

        self._poll_task = asyncio.create_task(self._poll(interval))
        logger.info(f"Polling {self.mode} every {interval}s")
        return self._poll_task

    async def _poll(self, interval: float) -> None:
        while True:
            await self.sync()
            await asyncio.sleep(interval)

    async def stop_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Polling stopped")

    # --- writes ---

    def _event(self, kind: str, by: str, status: str = "", note: str = "") -> LeadEvent:
        return LeadEvent(kind=kind, status=status, note=note, by=by, at=utc_now_iso())

    def _upsert_cache(self, lead: Lead) -> None:
        for i, existing in enumerate(self._cache):
            if existing["id"] == lead["id"]:
                self._cache[i] = lead
                return
        self._cache.insert(0, lead)

    async def _write(self, packet: Dict[str, Any], lead: Lead) -> Optional[str]:
        """
        Propagate one change to the active store.

        Returns None when acknowledged, otherwise the failure message. The
        cache and the backup snapshot keep the change either way; failed
        writes are parked in the pending table.
        """
        error = None
        try:
            await self.store.write_record(copy.deepcopy(packet))
        except StoreError as e:
            error = str(e) or type(e).__name__
            logger.warning(
                f"{packet.get('action')} {lead['id']} not acknowledged by {self.mode}: {error}; saved locally"
            )
            self.local.upsert(PENDING, copy.deepcopy(lead))
        else:
            # The store now holds this change; stop overlaying the parked copy on sync
            if self.local.remove(PENDING, lead["id"]):
                logger.info(f"Lead {lead['id']} confirmed by {self.mode}, cleared from pending")

        self.local.save_snapshot(self._cache)
        return error

    def _result(self, lead_id: str, error: Optional[str], message: str) -> WriteResult:
        if error is None:
            return WriteResult(success=True, lead_id=lead_id, reason=None, local_only=False, message=message)
        return WriteResult(
            success=False,
            lead_id=lead_id,
            reason=WRITE_NOT_ACKNOWLEDGED,
            local_only=True,
            message=f"Saved locally, not yet confirmed: {error}",
        )

    async def submit(self, draft: Dict[str, Any], by: Optional[str] = None) -> WriteResult:
        """Create a lead in Submitted state; the local copy is kept even if the store write fails."""
        raw = dict(draft or {})
        raw["status"] = SUBMITTED
        lead = normalize(raw)
        lead["events"].append(self._event("status", by=by or lead["agent"], status=SUBMITTED, note="Lead created"))

        self._upsert_cache(lead)
        error = await self._write({"action": "CREATE", **lead}, lead)

        logger.info(f"Lead {lead['id']} submitted for {lead['client']} (acknowledged: {error is None})")
        self._emit("submitted", {"lead": copy.deepcopy(lead), "acknowledged": error is None})
        return self._result(lead["id"], error, "Lead submitted")

    async def transition(self, lead_id: str, new_status: str, by: str = "System", note: str = "") -> WriteResult:
        """Move a lead to `new_status` if the workflow allows it."""
        lead = self._find(lead_id)
        if lead is None:
            logger.warning(f"Transition requested for unknown lead {lead_id}")
            return WriteResult(
                success=False, lead_id=lead_id, reason=NOT_FOUND, local_only=False,
                message=f"Lead {lead_id} not found",
            )

        current = lead["status"]
        if not self.workflow.is_valid_transition(current, new_status):
            logger.warning(f"Rejected transition {lead_id}: {current} -> {new_status}")
            return WriteResult(
                success=False, lead_id=lead_id, reason=INVALID_TRANSITION, local_only=False,
                message=f"{current} -> {new_status} is not a legal transition",
            )

        if new_status == current:
            return WriteResult(success=True, lead_id=lead_id, reason=None, local_only=False, message="No change")

        lead["status"] = new_status
        lead["events"].append(self._event("status", by=by, status=new_status, note=note))

        packet = {"action": "UPDATE_STATUS", "id": lead_id, "status": new_status, "events": lead["events"]}
        error = await self._write(packet, lead)

        logger.info(f"Lead {lead_id} moved {current} -> {new_status} by {by}")
        self._emit("transitioned", {
            "lead": copy.deepcopy(lead),
            "from": current,
            "to": new_status,
            "acknowledged": error is None,
        })
        return self._result(lead_id, error, f"{current} -> {new_status}")

    async def add_note(self, lead_id: str, note: str, by: str = "System") -> WriteResult:
        """Append a note to the lead's journey, keeping every earlier entry."""
        lead = self._find(lead_id)
        if lead is None:
            return WriteResult(
                success=False, lead_id=lead_id, reason=NOT_FOUND, local_only=False,
                message=f"Lead {lead_id} not found",
            )

        lead["note"] = note
        lead["events"].append(self._event("note", by=by, status=lead["status"], note=note))

        packet = {"action": "ADD_NOTE", "id": lead_id, "note": note, "events": lead["events"]}
        error = await self._write(packet, lead)

        self._emit("noted", {"lead": copy.deepcopy(lead), "acknowledged": error is None})
        return self._result(lead_id, error, "Note added")


def build_reconciler(workflow: Optional[WorkflowGraph] = None) -> LeadReconciler:
    """Build a reconciler from environment configuration."""
    cloud_url = (os.getenv("CLOUD_URL") or LOCAL_DB).strip()

    local = LocalStore()
    if os.getenv("LOCAL_DB_SEED", "").lower() in ("1", "true", "yes"):
        local.seed()

    if cloud_url == LOCAL_DB:
        store = local
    elif cloud_url.startswith(("http://", "https://")):
        store = CloudStore(cloud_url)
    else:
        raise ValueError(f"CLOUD_URL must be {LOCAL_DB} or an http(s) URL, got {cloud_url!r}")

    logger.info(f"Active lead store: {store.name}")
    return LeadReconciler(
        store,
        local=local,
        workflow=workflow,
        max_retries=int(os.getenv("SYNC_MAX_RETRIES", "3")),
        retry_delay=float(os.getenv("SYNC_RETRY_DELAY_S", "1.0")),
        poll_interval=float(os.getenv("SYNC_POLL_INTERVAL_S", "30")),
    )
