"""
Strategic Partner Estimator - FastAPI Backend
==============================================
API server that runs scenario analyses as background jobs.

Flow:
1. POST /api/analyses queues a job for the submitted inputs
2. The job drives the calculation workbook through the orchestrator,
   retrying the whole run once on failure
3. GET /api/analyses/{job_id} reports progress, then the results
4. POST /api/analyses/{job_id}/retry re-runs a failed job; finished
   scenarios are served from the resume cache
"""

import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from estimator_constants import DEFAULT_CACHE_PATH, FILING_STATUS_LABELS, SCENARIO_NAMES, US_STATES
from models import JobStatus, UserInputs
from orchestrator import PLANS, WorkflowOrchestrator, run_analysis_with_retry
from resume_cache import FileResumeCache, ResumeCache
from scenario_executor import SCENARIO_CONFIGS
from sheets_client import SheetsClient, get_script_url

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION SETUP
# =============================================================================

# In-memory job storage (one process, one worker)
analysis_jobs: Dict[str, Dict[str, Any]] = {}

_resume_cache: Optional[ResumeCache] = None


def get_resume_cache() -> ResumeCache:
    """Shared durable resume cache, so retries and re-submissions resume."""
    global _resume_cache
    if _resume_cache is None:
        _resume_cache = FileResumeCache(os.environ.get("ESTIMATOR_CACHE_PATH", DEFAULT_CACHE_PATH))
    return _resume_cache


def create_client() -> SheetsClient:
    return SheetsClient()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Strategic Partner Estimator starting up...")
    if not get_script_url():
        logger.warning("GOOGLE_APPS_SCRIPT_URL is not set; analyses will fail until it is")
    yield
    logger.info("Strategic Partner Estimator shutting down...")


app = FastAPI(
    title="Strategic Partner Estimator",
    description="Scenario analysis on top of the calculation workbook",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173", "http://localhost:8501"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class AnalysisRequest(BaseModel):
    inputs: UserInputs
    plan: str = "full"
    scenarios: Optional[List[int]] = None


class AnalysisJobResponse(BaseModel):
    job_id: str
    status: str
    message: str


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def get_job(job_id: str) -> Dict[str, Any]:
    """Get job or raise 404."""
    if job_id not in analysis_jobs:
        raise HTTPException(status_code=404, detail=f"Analysis {job_id} not found")
    return analysis_jobs[job_id]


async def process_analysis_job(job_id: str) -> None:
    """Run one queued analysis and record its progress and outcome."""
    job = analysis_jobs[job_id]
    job["status"] = JobStatus.RUNNING
    job["started_at"] = datetime.utcnow()
    job["error"] = None

    def on_progress(percent: float, message: str) -> None:
        job["progress"] = percent
        job["message"] = message

    client = create_client()
    try:
        orchestrator = WorkflowOrchestrator(client, get_resume_cache())
        result = await run_analysis_with_retry(
            orchestrator,
            job["inputs"],
            on_progress,
            plan=job["plan"],
            scenarios=job["scenarios"],
        )
        job["result"] = result
        job["status"] = JobStatus.COMPLETED
        job["completed_at"] = datetime.utcnow()
        logger.info(f"[{job_id}] Analysis complete")
    except Exception as e:
        logger.error(f"[{job_id}] Analysis failed: {e}")
        job["status"] = JobStatus.FAILED
        job["error"] = str(e) or e.__class__.__name__
    finally:
        await client.aclose()


def queue_job(job_id: str, background_tasks: BackgroundTasks) -> None:
    job = analysis_jobs[job_id]
    job["status"] = JobStatus.PENDING
    job["progress"] = 0.0
    job["message"] = "Initializing..."
    background_tasks.add_task(process_analysis_job, job_id)


# =============================================================================
# API ENDPOINTS
# =============================================================================

@app.get("/")
async def root():
    """API health check."""
    return {
        "service": "Strategic Partner Estimator",
        "version": "1.0.0",
        "status": "healthy",
    }


@app.get("/api/health")
async def health_check():
    """Detailed health check."""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "components": {
            "calculation_backend": "configured" if get_script_url() else "not_configured",
            "resume_cache": "ready",
        },
    }


# --- REFERENCE DATA ---

@app.get("/api/reference/states")
async def get_states():
    return {"states": US_STATES}


@app.get("/api/reference/scenarios")
async def get_scenarios():
    """Scenario catalog and the named plans."""
    return {
        "scenarios": [
            {
                "number": number,
                "name": SCENARIO_NAMES[number],
                "solar": config.solar,
                "donation": config.has_donation,
                "seek_refund": config.seek_refund,
            }
            for number, config in sorted(SCENARIO_CONFIGS.items())
        ],
        "plans": {name: list(plan.scenarios) for name, plan in PLANS.items()},
        "filing_statuses": {status.value: label for status, label in FILING_STATUS_LABELS.items()},
    }


# --- ANALYSES ---

@app.post("/api/analyses", response_model=AnalysisJobResponse)
async def create_analysis(request: AnalysisRequest, background_tasks: BackgroundTasks):
    """Queue an analysis for the submitted inputs."""
    if request.scenarios is None and request.plan not in PLANS:
        raise HTTPException(status_code=400, detail=f"Unknown plan: {request.plan}")
    if request.scenarios is not None:
        unknown = [n for n in request.scenarios if n not in SCENARIO_NAMES]
        if unknown:
            raise HTTPException(status_code=400, detail=f"Unknown scenarios: {unknown}")

    job_id = str(uuid.uuid4())
    analysis_jobs[job_id] = {
        "inputs": request.inputs,
        "plan": request.plan,
        "scenarios": request.scenarios,
        "created_at": datetime.utcnow(),
        "result": None,
        "error": None,
    }
    queue_job(job_id, background_tasks)

    return AnalysisJobResponse(
        job_id=job_id,
        status=JobStatus.PENDING.value,
        message="Analysis queued",
    )


@app.get("/api/analyses/{job_id}")
async def get_analysis(job_id: str):
    """Progress of an analysis, and its results once complete."""
    job = get_job(job_id)
    response = {
        "job_id": job_id,
        "status": job["status"].value,
        "progress": job.get("progress", 0.0),
        "message": job.get("message", ""),
        "plan": job["plan"],
    }

    if job.get("error"):
        response["error"] = job["error"]

    if job.get("result") is not None:
        response["results"] = job["result"].to_payload()

    return response


@app.post("/api/analyses/{job_id}/retry", response_model=AnalysisJobResponse)
async def retry_analysis(job_id: str, background_tasks: BackgroundTasks):
    """Re-run a failed analysis from the top; cached scenarios are skipped."""
    job = get_job(job_id)
    if job["status"] != JobStatus.FAILED:
        raise HTTPException(status_code=409, detail=f"Analysis {job_id} is {job['status'].value}")

    queue_job(job_id, background_tasks)
    return AnalysisJobResponse(
        job_id=job_id,
        status=JobStatus.PENDING.value,
        message="Analysis re-queued",
    )


# --- ERROR HANDLERS ---

@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc) if os.getenv("DEBUG") else "An error occurred",
        },
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
