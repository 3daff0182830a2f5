import os
import time
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from loguru import logger
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from graph.workflow import WorkflowGraph
from graph.reconciler import build_reconciler
from tools.slack import SlackNotifier

# Configure logging
logger.add("logs/app.log", rotation="1 day", retention="7 days", level="INFO")

workflow = WorkflowGraph()
reconciler = build_reconciler(workflow)
reconciler.subscribe(SlackNotifier())


@asynccontextmanager
async def lifespan(app: FastAPI):
    if reconciler.poll_interval > 0:
        reconciler.start_polling()
    yield
    await reconciler.stop_polling()


app = FastAPI(
    title="Lead Pipeline Reconciler",
    description="Loan lead workflow and multi-store data reconciliation",
    version="1.0.0",
    lifespan=lifespan
)


@app.get("/health")
def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "version": "1.0.0",
        "services": {
            "store": reconciler.mode,
            "redis": "connected" if reconciler.local.r else "disconnected",
            "sync_state": reconciler.state,
            "stale": reconciler.stale,
            "last_error": reconciler.last_error,
            "polling": reconciler.is_polling
        }
    }


@app.get("/stages")
def list_stages():
    return [s.to_dict() for s in workflow.stages()]


@app.get("/stages/{code}")
def get_stage(code: str):
    return workflow.get_stage(code).to_dict()


@app.get("/stages/{code}/next")
def next_stages(code: str):
    """Legal next stages; the first one is the primary action."""
    return [s.to_dict() for s in workflow.next_options(code)]


@app.post("/sync")
async def sync():
    leads = await reconciler.sync()
    return {"state": reconciler.state, "stale": reconciler.stale, "error": reconciler.last_error, "count": len(leads)}


@app.post("/sync/retry")
async def retry_sync():
    leads = await reconciler.retry()
    return {"state": reconciler.state, "stale": reconciler.stale, "error": reconciler.last_error, "count": len(leads)}


@app.get("/leads")
def list_leads(agent: str = None, status: str = None, product_type: str = None):
    """Agent-scoped lead list; `excluded_all` flags an agent filter that hid everything."""
    return reconciler.query(agent=agent, status=status, product_type=product_type)


@app.get("/leads/{lead_id}")
def get_lead(lead_id: str):
    lead = reconciler.get(lead_id)
    if lead is None:
        raise HTTPException(status_code=404, detail=f"Lead {lead_id} not found")
    return {
        "lead": lead,
        "stage": workflow.get_stage(lead["status"]).to_dict(),
        "next": [s.to_dict() for s in workflow.next_options(lead["status"])]
    }


@app.post("/leads")
async def submit_lead(req: Request):
    """
    Submit a new lead.

    Expected payload (any of the supported column aliases work):
    {
        "client": "Asha Rao",
        "phone": "9800000000",
        "amount": "1,50,000",
        "product_type": "PL",
        "agent": "AGENT_001",
        "note": "Salaried, wants 36 months"
    }
    """
    payload = await req.json()
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Lead payload must be a JSON object")
    logger.info(f"Received lead submission: {payload.get('client', 'unknown')}")
    return await reconciler.submit(payload)


@app.post("/leads/{lead_id}/transition")
async def transition_lead(lead_id: str, req: Request):
    payload = await req.json()
    status = payload.get("status") if isinstance(payload, dict) else None
    if not status:
        raise HTTPException(status_code=400, detail="status is required")
    return await reconciler.transition(
        lead_id,
        status,
        by=payload.get("by") or "System",
        note=payload.get("note") or ""
    )


@app.post("/leads/{lead_id}/notes")
async def add_note(lead_id: str, req: Request):
    payload = await req.json()
    note = (payload.get("note") if isinstance(payload, dict) else None) or ""
    if not note.strip():
        raise HTTPException(status_code=400, detail="note is required")
    return await reconciler.add_note(lead_id, note, by=payload.get("by") or "System")


@app.get("/metrics")
def get_metrics(agent: str):
    """Dashboard numbers for one agent."""
    return reconciler.metrics(agent)


# Error handlers
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"status": "error", "message": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn

    # Create logs directory if it doesn't exist
    os.makedirs("logs", exist_ok=True)

    logger.info("Starting Lead Pipeline Reconciler")

    uvicorn.run(
        "app:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
