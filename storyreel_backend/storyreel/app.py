import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import quote

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

# Ensure .env is loaded before importing modules that initialize API clients
from . import settings
from .cancellation import CancelToken
from .errors import OperationCancelled, PipelineError
from .media import sanitize_filename
from .models import ProductionProgress, ProductionRequest, VideoProject
from .orchestrator import ProductionOrchestrator
from .progress import ProgressChannel

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global ORCHESTRATOR
    yield
    if ORCHESTRATOR is not None:
        logger.info("Shutting down, closing provider clients")
        orchestrator, ORCHESTRATOR = ORCHESTRATOR, None
        await orchestrator.aclose()


app = FastAPI(title="Storyreel Backend", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS or ["*"],
    allow_credentials=True,
    allow_methods=["POST", "GET", "OPTIONS"],
    allow_headers=["*"],
)

# Built on first use; tests assign their own.
ORCHESTRATOR: Optional[ProductionOrchestrator] = None


def get_orchestrator() -> ProductionOrchestrator:
    global ORCHESTRATOR
    if ORCHESTRATOR is None:
        if not settings.has_all_keys():
            logger.error("API keys missing, cannot start job")
            raise HTTPException(500, "Server configuration error: missing required API keys")
        from .factory import build_orchestrator
        ORCHESTRATOR = build_orchestrator()
    return ORCHESTRATOR


class JobRecord:
    def __init__(self, job_id: str, project: VideoProject):
        self.job_id = job_id
        self.project = project
        self.status = "queued"
        self.error: Optional[str] = None
        self.error_kind: Optional[str] = None
        self.progress: Optional[ProductionProgress] = None
        self.final_path: Optional[Path] = None
        self.token = CancelToken()
        self.task: Optional[asyncio.Task] = None

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "title": self.project.title,
            "status": self.status,
            "error": self.error,
            "error_kind": self.error_kind,
            "progress": self.progress.model_dump(mode="json") if self.progress else None,
        }


JOBS: Dict[str, JobRecord] = {}


def _get_job(job_id: str) -> JobRecord:
    job = JOBS.get(job_id)
    if not job:
        raise HTTPException(404, "job not found")
    return job


async def _background_produce(job: JobRecord, orchestrator: ProductionOrchestrator):
    channel = ProgressChannel()

    async def drain():
        async for p in channel:
            job.progress = p

    drainer = asyncio.create_task(drain())
    status = "failed"
    try:
        logger.info(f"Starting background production for job {job.job_id}")
        job.status = "running"
        job.final_path = await orchestrator.produce(job.project, channel, job.token)
        status = "succeeded"
        logger.info(f"Background production completed for job {job.job_id}: {job.final_path}")
    except OperationCancelled as e:
        logger.info(f"Job {job.job_id} cancelled: {e}")
        status = "cancelled"
        job.error = str(e)
        job.error_kind = e.kind.value
    except Exception as e:
        logger.exception(f"Background production failed for job {job.job_id}: {e}")
        job.error = str(e)
        job.error_kind = e.kind.value if isinstance(e, PipelineError) else None
    finally:
        # Publish the terminal status only once every progress event is recorded.
        channel.close()
        await drainer
        job.status = status


@app.get("/health")
def health():
    keys_ok = settings.has_all_keys()
    logger.info(f"Health check: API keys present = {keys_ok}")
    return {"ok": True, "has_keys": keys_ok, "tts_provider": settings.TTS_PROVIDER}


@app.post("/v1/productions:start")
async def start_production(req: ProductionRequest):
    if not req.title.strip() or not req.story_text.strip():
        raise HTTPException(400, "title and story_text are required")
    orchestrator = get_orchestrator()

    job_id = str(uuid.uuid4())
    project = VideoProject(
        project_id=job_id,
        title=req.title.strip(),
        output_directory=Path(settings.OUTPUT_DIR) / job_id,
        raw_story_text=req.story_text,
        base_visual_style=req.visual_style,
    )
    job = JobRecord(job_id, project)
    JOBS[job_id] = job
    logger.info(f"Queued job {job_id}: {project.title}")
    job.task = asyncio.create_task(_background_produce(job, orchestrator))
    return {"job_id": job_id, "status": job.status}


@app.get("/v1/jobs/{job_id}")
async def job_status(job_id: str):
    return _get_job(job_id).to_dict()


@app.post("/v1/jobs/{job_id}:cancel")
async def cancel_job(job_id: str):
    job = _get_job(job_id)
    if job.status not in ("queued", "running"):
        raise HTTPException(409, f"job already {job.status}")
    job.token.cancel("cancelled via API")
    return {"job_id": job_id, "status": "cancelling"}


@app.get("/v1/jobs/{job_id}/download")
def job_download(job_id: str):
    job = _get_job(job_id)
    if job.status != "succeeded" or not job.final_path or not os.path.exists(job.final_path):
        raise HTTPException(409, "job not ready")

    def iterfile(path):
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(1024 * 1024), b""):
                yield chunk

    filename = f"{sanitize_filename(job.project.title)}.mp4"
    headers = {"Content-Disposition": f"attachment; filename*=UTF-8''{quote(filename)}"}
    return StreamingResponse(iterfile(job.final_path), media_type="video/mp4", headers=headers)
