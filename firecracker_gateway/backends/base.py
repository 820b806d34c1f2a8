"""
Execution backend interface for the Firecracker gateway
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class BackendError(Exception):
    """Base error raised by execution backends"""


class UnsupportedLanguageError(BackendError):
    """Requested language has no execution recipe"""


class CapacityError(BackendError):
    """No VM slot available for a new execution"""


class ExecutionResult(BaseModel):
    """Result returned by a backend for one execution.

    Backends report execution failures here (success=False) rather than
    raising; only infrastructure faults escape as exceptions.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    success: bool
    output: Optional[str] = None
    error: Optional[str] = None
    execution_time: Optional[Union[int, float]] = Field(
        default=None, alias="executionTime"
    )
    logs: Optional[List[str]] = None
    vm_id: Optional[str] = Field(default=None, alias="vmId")


class ExecutionBackend(ABC):
    """Abstract execution backend consumed by the gateway routes"""

    name: str = "base"

    @abstractmethod
    async def execute_code(
        self, files: Dict[str, str], language: str, timeout_ms: float
    ) -> ExecutionResult:
        """Run the given files and report the outcome.

        Args:
            files: Mapping of file name to file content
            language: Language identifier (e.g. "python", "js")
            timeout_ms: Execution timeout in milliseconds

        Returns:
            ExecutionResult describing success or failure
        """

    @abstractmethod
    async def get_vm_status(self, vm_id: str) -> Any:
        """Return an opaque status value for a VM"""

    @abstractmethod
    async def list_active_vms(self) -> List[Dict[str, Any]]:
        """Return descriptions of all VMs currently tracked"""

    @abstractmethod
    async def stop_vm(self, vm_id: str) -> None:
        """Stop a VM and release its slot"""

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Report whether the backend can serve executions"""

    async def close(self) -> None:
        """Release every resource held by the backend"""
        return None
