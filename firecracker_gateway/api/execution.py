"""
Code execution API endpoints backed by Firecracker microVMs
"""

import asyncio
import logging
import re
import time
from typing import Any, Awaitable, Dict, List, Optional, Union

from fastapi import APIRouter, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..backends import ExecutionBackend, ExecutionResult
from ..backends.scripts import LANGUAGE_RUNNERS
from ..config import Settings
from ..metrics import metrics

logger = logging.getLogger(__name__)
router = APIRouter(tags=["execution"])

# Client-facing messages for request validation failures, keyed by body field
FIELD_MESSAGES = {
    "files": "Files must be an array",
    "language": "Language must be specified",
    "timeout": "Timeout must be numeric",
}

# Plain decimal notation only: no exponents, NaN or Infinity
NUMERIC_STRING = re.compile(r"[+-]?([0-9]*\.)?[0-9]+")


class GatewayTimeoutError(Exception):
    """Backend call outlived the request timeout plus grace"""


class FileEntry(BaseModel):
    """A single source file submitted for execution"""
    name: str
    content: str


class ExecutionRequest(BaseModel):
    """Request to execute a set of files"""
    files: List[FileEntry] = Field(..., description="Files to materialize in the VM")
    language: str = Field(..., description="Language identifier, e.g. python or js")
    timeout: Optional[float] = Field(
        default=None,
        allow_inf_nan=False,
        description="Execution timeout in milliseconds (default 30000)",
    )

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "files": [{"name": "main.py", "content": "print('hello')"}],
                "language": "python",
                "timeout": 5000,
            }
        }
    )

    @field_validator("timeout", mode="before")
    @classmethod
    def _check_timeout(cls, value):
        # Omitted means default; null and booleans are not numbers
        if value is None or isinstance(value, bool):
            raise ValueError("Timeout must be numeric")
        if isinstance(value, str):
            if not NUMERIC_STRING.fullmatch(value):
                raise ValueError("Timeout must be numeric")
            return float(value)
        return value


class ExecutionResponse(BaseModel):
    """Response envelope for an execution, successful or not"""
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    output: Optional[str] = None
    stdout: Optional[str] = None
    stderr: Optional[str] = None
    error: Optional[str] = None
    execution_time: Optional[Union[int, float]] = Field(
        default=None, alias="executionTime"
    )
    logs: List[str] = Field(default_factory=list)


def build_file_map(files: List[FileEntry]) -> Dict[str, str]:
    """Map file name to content; a later duplicate name replaces the earlier one"""
    file_map: Dict[str, str] = {}
    for f in files:
        file_map[f.name] = f.content
    return file_map


def build_execution_response(result: ExecutionResult) -> Dict[str, Any]:
    return {
        "success": result.success,
        "output": result.output,
        "stdout": result.output,
        "stderr": result.error,
        "error": None if result.success else result.error,
        "executionTime": result.execution_time,
        "logs": result.logs or [],
    }


def _get_backend(request: Request) -> ExecutionBackend:
    backend = getattr(request.app.state, "backend", None)
    if backend is None:
        raise HTTPException(status_code=503, detail="Execution backend not initialized")
    return backend


def _get_settings(request: Request) -> Settings:
    return request.app.state.settings


def _language_label(language: str) -> str:
    # Keep metric label cardinality bounded
    value = (language or "").lower()
    return value if value in LANGUAGE_RUNNERS else "other"


async def _await_with_deadline(
    call: Awaitable[Any], timeout_ms: float, settings: Settings
) -> Any:
    if not settings.enforce_timeout:
        return await call

    limit_ms = float(timeout_ms) + settings.timeout_grace_ms
    try:
        return await asyncio.wait_for(call, timeout=limit_ms / 1000)
    except asyncio.TimeoutError:
        raise GatewayTimeoutError(
            f"Execution timed out after {int(limit_ms)}ms"
        ) from None


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Render body validation failures as HTTP 400"""
    errors = []
    seen = set()
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        field = loc[0] if loc else "body"
        if len(loc) > 1:
            message = f"Invalid entry at {'.'.join(loc)}: {err.get('msg')}"
        else:
            message = FIELD_MESSAGES.get(field, err.get("msg", "Invalid value"))
        key = (".".join(loc) or field, message)
        if key in seen:
            continue
        seen.add(key)
        errors.append({"field": key[0], "message": message})

    logger.info(
        "Rejected invalid request",
        extra={"path": request.url.path, "fields": [e["field"] for e in errors]},
    )
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Validation failed", "errors": errors},
    )


@router.post("/run", response_model=ExecutionResponse)
async def run_code(body: ExecutionRequest, request: Request):
    """Execute code in a Firecracker microVM"""
    backend = _get_backend(request)
    settings = _get_settings(request)
    label = _language_label(body.language)
    start_time = time.time()

    try:
        timeout = body.timeout if body.timeout is not None else settings.default_timeout_ms

        logger.info(f"Executing {body.language} code with {len(body.files)} files")

        file_map = build_file_map(body.files)
        raw = await _await_with_deadline(
            backend.execute_code(file_map, body.language, timeout), timeout, settings
        )
        result = raw if isinstance(raw, ExecutionResult) else ExecutionResult.model_validate(raw)

        metrics.record_execution(
            label, "success" if result.success else "failure", time.time() - start_time
        )
        return build_execution_response(result)

    except Exception as e:
        logger.error(f"Firecracker execution error: {e}", exc_info=True)
        metrics.record_execution(label, "error", time.time() - start_time)
        metrics.record_error(type(e).__name__, "gateway")

        message = str(e)
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": message or "Execution failed",
                "output": None,
                "stderr": message,
            },
        )


@router.get("/status/{vm_id}")
async def get_execution_status(vm_id: str, request: Request):
    """Get execution status (for long-running processes)"""
    backend = _get_backend(request)
    try:
        status = await backend.get_vm_status(vm_id)
        return {"status": status}
    except Exception as e:
        logger.error(f"Status check error: {e}", exc_info=True, extra={"vm_id": vm_id})
        metrics.record_error(type(e).__name__, "status")
        return JSONResponse(
            status_code=500, content={"error": "Failed to get execution status"}
        )


@router.get("/active")
async def list_active_vms(request: Request):
    """List VMs the backend is currently tracking"""
    backend = _get_backend(request)
    try:
        vms = await backend.list_active_vms()
        return {"count": len(vms), "vms": vms}
    except Exception as e:
        logger.error(f"List VMs error: {e}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to list active VMs", "details": str(e)},
        )


@router.post("/stop/{vm_id}")
async def stop_vm(vm_id: str, request: Request):
    backend = _get_backend(request)
    try:
        await backend.stop_vm(vm_id)
        return {"message": "VM stopped successfully"}
    except Exception as e:
        logger.error(f"Stop VM error: {e}", exc_info=True, extra={"vm_id": vm_id})
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to stop VM", "details": str(e)},
        )


@router.get("/health")
async def backend_health(request: Request):
    """Backend health: binaries, images and VM slots"""
    backend = _get_backend(request)
    try:
        return await backend.health_check()
    except Exception as e:
        logger.error(f"Backend health check error: {e}", exc_info=True)
        return JSONResponse(
            status_code=500, content={"status": "unhealthy", "error": str(e)}
        )
