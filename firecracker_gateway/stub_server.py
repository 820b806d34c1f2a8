"""
Stub API server.

Health check plus placeholder project, file and execution routes. Nothing
here touches the execution gateway or any backend.
"""

import logging
import sys
import time
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from firecracker_gateway import __version__
from firecracker_gateway.config import Settings

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

settings = Settings()

# Process start reference for the uptime figure
_STARTED_AT = time.monotonic()


def process_uptime() -> float:
    """Seconds since this module was loaded"""
    return time.monotonic() - _STARTED_AT


app = FastAPI(
    title="Stub API Server",
    description="Placeholder API surface",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/api/health")
async def health():
    return {
        "status": "healthy",
        "uptime": process_uptime(),
        "environment": settings.environment,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/api/projects")
async def list_projects():
    return {"projects": []}


@app.post("/api/projects")
async def create_project():
    return {"message": "Project creation not implemented yet"}


@app.get("/api/files")
async def list_files():
    return {"files": []}


@app.post("/api/execution")
async def execute():
    return {"message": "Code execution not implemented yet"}


def run():
    """Start the stub server on 0.0.0.0:$PORT"""
    try:
        logger.info("Starting stub API server")
        logger.info(f"Binding to port {settings.port}")
        logger.info(f"Environment: {settings.environment}")
        logger.info(f"Health check: http://localhost:{settings.port}/api/health")
        uvicorn.run(app, host="0.0.0.0", port=settings.port, log_level="info")
    except Exception as e:
        logger.error(f"Failed to start server: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    run()
