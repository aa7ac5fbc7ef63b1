from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import tasks, schema_migration
from services.errors import TaskEngineError
from services.storage_adapter import StorageError, StoredFileNotFoundError

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

CLIENT_UPDATE_WORKER_INTERVAL_SECONDS = int(os.getenv("CLIENT_UPDATE_WORKER_INTERVAL_SECONDS", "60"))

scheduler = AsyncIOScheduler()

from job_runner import run_client_update_worker, run_stale_generation_lock_cleanup


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    if os.getenv("PYTEST_RUNNING"):
        yield
        return

    logger.info("Starting Task Engine API")
    await database.connect()

    # Client follow-up retries (outbox)
    scheduler.add_job(
        run_client_update_worker,
        IntervalTrigger(seconds=CLIENT_UPDATE_WORKER_INTERVAL_SECONDS),
        id="client_update_worker",
        name="Client Update Worker",
        replace_existing=True
    )
    # Expired generation locks - every 15 minutes
    scheduler.add_job(
        run_stale_generation_lock_cleanup,
        IntervalTrigger(minutes=15),
        id="stale_generation_lock_cleanup",
        name="Stale Generation Lock Cleanup",
        replace_existing=True
    )
    scheduler.start()
    logger.info("Background job scheduler started")
    yield
    # Shutdown
    logger.info("Shutting down Task Engine API")
    scheduler.shutdown(wait=False)
    await database.close()


# Create FastAPI app
app = FastAPI(
    title="Task Engine API",
    description="Task lifecycle and document generation",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(tasks.router)
app.include_router(schema_migration.router)


# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }


@app.exception_handler(TaskEngineError)
async def task_engine_exception_handler(request: Request, exc: TaskEngineError):
    if exc.status_code >= 500:
        logger.error(f"{exc.error_type}: {exc.message}")
    else:
        logger.info(f"{exc.error_type} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(StorageError)
async def storage_exception_handler(request: Request, exc: StorageError):
    if isinstance(exc, StoredFileNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc), "error_type": "file_not_found"})
    logger.error(f"Storage error on {request.url.path}: {exc}")
    return JSONResponse(status_code=502, content={"detail": str(exc), "error_type": "storage_error"})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Request validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_errors(errors), "request_id": request_id},
    )


def jsonable_errors(errors):
    return [{"loc": list(e.get("loc", [])), "msg": e.get("msg"), "type": e.get("type")} for e in errors]


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
