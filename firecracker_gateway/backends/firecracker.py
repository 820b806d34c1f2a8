"""
Firecracker microVM execution backend.

Each execution gets its own microVM: the host-side start script boots a VM
that runs the generated execution script and powers off when it finishes.
The backend waits for the Firecracker process to exit, parses the VM log
for program output and always runs the stop script afterwards.

Host layout (configurable through Settings):
- <firecracker_path>/start-firecracker.sh start <vm_id> <script>
    prints VM_ID:, VM_IP:, FC_PID: and LOG_FILE: lines on success
- <firecracker_path>/stop-firecracker.sh <vm_id>
"""

import asyncio
import logging
import math
import os
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import aiofiles

from ..config import Settings
from ..metrics import metrics
from .base import BackendError, CapacityError, ExecutionBackend, ExecutionResult
from .scripts import EXECUTION_MARKER, build_execution_script

logger = logging.getLogger(__name__)


@dataclass
class VMInfo:
    """Tracking record for one microVM"""

    vm_id: str
    start_time: float
    # Id the start script reports for the VM; only the stop script uses it
    fc_vm_id: Optional[str] = None
    vm_ip: Optional[str] = None
    fc_pid: Optional[int] = None
    log_file: Optional[str] = None
    started: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vmId": self.vm_id,
            "fcVmId": self.fc_vm_id,
            "startTime": int(self.start_time * 1000),
            "vmIp": self.vm_ip,
            "fcPid": self.fc_pid,
            "logFile": self.log_file,
            "started": self.started,
        }


def parse_vm_info(output: str, vm_id: str, start_time: float) -> VMInfo:
    """Build VMInfo from the start script's KEY:value lines"""
    info = VMInfo(vm_id=vm_id, start_time=start_time)

    for line in output.splitlines():
        key, sep, value = line.strip().partition(":")
        if not sep:
            continue
        value = value.strip()
        if key == "VM_ID" and value:
            info.fc_vm_id = value
        elif key == "VM_IP":
            info.vm_ip = value or None
        elif key == "FC_PID":
            try:
                info.fc_pid = int(value)
            except ValueError:
                logger.warning(f"Ignoring malformed FC_PID line: {line!r}")
        elif key == "LOG_FILE":
            info.log_file = value or None

    return info


def parse_execution_log(content: str) -> Tuple[str, str]:
    """Split VM console output into (stdout, stderr).

    Everything before the first line containing the execution marker is boot
    noise. After it, lines mentioning ERROR/error are treated as stderr.
    """
    stdout_lines: List[str] = []
    stderr_lines: List[str] = []
    in_output = False

    for line in content.split("\n"):
        if not in_output:
            if EXECUTION_MARKER in line:
                in_output = True
            continue

        if "ERROR" in line or "error" in line:
            stderr_lines.append(line)
        elif line.strip():
            stdout_lines.append(line)

    return "\n".join(stdout_lines).strip(), "\n".join(stderr_lines).strip()


class FirecrackerBackend(ExecutionBackend):
    """Runs code in throwaway Firecracker microVMs on this host"""

    name = "firecracker"

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        self.firecracker_path = self.settings.firecracker_path
        self.start_script = self.settings.start_script
        self.stop_script = self.settings.stop_script
        self.max_concurrent_vms = self.settings.max_concurrent_vms
        self.active_vms: Dict[str, VMInfo] = {}

    @staticmethod
    def generate_vm_id() -> str:
        return f"vm-{secrets.token_hex(8)}-{int(time.time() * 1000)}"

    @staticmethod
    def is_vm_running(pid: Optional[int]) -> bool:
        """Check whether the Firecracker process is still alive"""
        if not pid:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Started through sudo, so owned by root: it exists
            return True
        return True

    def _reserve(self, vm_id: str) -> None:
        # No await between the check and the insert, so this is atomic on the loop
        if len(self.active_vms) >= self.max_concurrent_vms:
            raise CapacityError("Maximum number of concurrent VMs reached")
        self.active_vms[vm_id] = VMInfo(vm_id=vm_id, start_time=time.time())
        metrics.set_active_vms(len(self.active_vms))

    def _release(self, vm_id: str) -> None:
        self.active_vms.pop(vm_id, None)
        metrics.set_active_vms(len(self.active_vms))

    async def execute_code(
        self, files: Dict[str, str], language: str, timeout_ms: float = 30000
    ) -> ExecutionResult:
        """Execute files in a fresh microVM.

        Failures of any kind are reported in the result; the VM is stopped on
        every exit path, cancellation included.
        """
        vm_id = self.generate_vm_id()
        if timeout_ms is None:
            timeout_ms = self.settings.default_timeout_ms

        try:
            self._reserve(vm_id)

            script = build_execution_script(
                files, language, timeout_seconds=math.ceil(float(timeout_ms) / 1000)
            )
            vm_info = await self.start_vm(vm_id, script)
            result = await self.wait_for_completion(vm_info, float(timeout_ms))

            logger.info(
                "Firecracker execution completed",
                extra={
                    "vm_id": vm_id,
                    "language": language,
                    "execution_time_ms": result["execution_time"],
                },
            )
            return ExecutionResult(
                success=True,
                output=result["stdout"],
                error=result["stderr"],
                execution_time=result["execution_time"],
                vm_id=vm_id,
            )

        except Exception as e:
            logger.warning(
                f"Firecracker execution failed: {e}",
                extra={"vm_id": vm_id, "language": language},
            )
            metrics.record_error(type(e).__name__, "backend")
            return ExecutionResult(
                success=False,
                output="",
                error=str(e),
                execution_time=0,
                vm_id=vm_id,
            )

        finally:
            await self.stop_vm(vm_id)

    async def start_vm(self, vm_id: str, script: str) -> VMInfo:
        """Boot a microVM that runs the given script"""
        start_time = time.time()

        proc = await asyncio.create_subprocess_exec(
            "sudo",
            self.start_script,
            "start",
            vm_id,
            script,
            cwd=self.firecracker_path,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.settings.vm_startup_timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise BackendError("VM startup timeout") from None

        if proc.returncode != 0:
            raise BackendError(
                f"Failed to start Firecracker VM: {stderr.decode('utf-8', errors='replace').strip()}"
            )

        vm_info = parse_vm_info(
            stdout.decode("utf-8", errors="replace"), vm_id, start_time
        )
        vm_info.started = True
        self.active_vms[vm_id] = vm_info
        metrics.set_active_vms(len(self.active_vms))

        logger.debug(
            "Firecracker VM started",
            extra={"vm_id": vm_info.vm_id, "fc_pid": vm_info.fc_pid, "vm_ip": vm_info.vm_ip},
        )
        return vm_info

    async def wait_for_completion(
        self, vm_info: VMInfo, timeout_ms: float
    ) -> Dict[str, Any]:
        """Wait for the VM to power off, then collect its output"""
        start = time.monotonic()

        async def _poll():
            while self.is_vm_running(vm_info.fc_pid):
                await asyncio.sleep(self.settings.vm_poll_interval)

        try:
            await asyncio.wait_for(_poll(), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise BackendError("Execution timeout") from None

        stdout, stderr = await self.read_execution_results(vm_info)
        return {
            "stdout": stdout,
            "stderr": stderr,
            "execution_time": int((time.monotonic() - start) * 1000),
        }

    async def read_execution_results(self, vm_info: VMInfo) -> Tuple[str, str]:
        if not vm_info.log_file:
            raise BackendError(
                "Failed to read execution results: VM reported no log file"
            )
        try:
            async with aiofiles.open(
                vm_info.log_file, mode="r", encoding="utf-8", errors="replace"
            ) as f:
                content = await f.read()
        except OSError as e:
            raise BackendError(f"Failed to read execution results: {e}") from e

        return parse_execution_log(content)

    async def stop_vm(self, vm_id: str) -> None:
        """Stop a VM and forget it. Stop failures are logged, never raised."""
        vm_info = self.active_vms.get(vm_id)
        if vm_info is None:
            return

        if not vm_info.started:
            self._release(vm_id)
            return

        try:
            proc = await asyncio.create_subprocess_exec(
                "sudo",
                self.stop_script,
                vm_info.fc_vm_id or vm_info.vm_id,
                cwd=self.firecracker_path,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            try:
                _, stderr = await asyncio.wait_for(
                    proc.communicate(), timeout=self.settings.vm_stop_timeout
                )
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
                logger.warning(f"Stop script timed out, forced cleanup of VM {vm_id}")
                return

            if proc.returncode != 0:
                logger.error(
                    f"Failed to stop VM: {vm_id}",
                    extra={"stderr": stderr.decode("utf-8", errors="replace").strip()},
                )
        except Exception as e:
            logger.error(f"Error stopping VM {vm_id}: {e}")
        finally:
            self._release(vm_id)

    async def get_vm_status(self, vm_id: str) -> Dict[str, Any]:
        vm_info = self.active_vms.get(vm_id)
        if vm_info is None:
            return {"vmId": vm_id, "state": "not_found"}

        if not vm_info.started:
            state = "starting"
        elif self.is_vm_running(vm_info.fc_pid):
            state = "running"
        else:
            state = "exited"

        return {
            "vmId": vm_info.vm_id,
            "state": state,
            "vmIp": vm_info.vm_ip,
            "pid": vm_info.fc_pid,
            "uptimeMs": int((time.time() - vm_info.start_time) * 1000),
        }

    async def list_active_vms(self) -> List[Dict[str, Any]]:
        return [vm.to_dict() for vm in self.active_vms.values()]

    async def health_check(self) -> Dict[str, Any]:
        """Verify the Firecracker binary, scripts and images are present"""
        required = [
            ("Firecracker binary", self.settings.firecracker_binary),
            ("start script", self.start_script),
            ("stop script", self.stop_script),
            ("kernel image", self.settings.kernel_image_path),
            ("rootfs image", self.settings.rootfs_image_path),
        ]
        for label, path in required:
            if not os.path.exists(path):
                return {
                    "status": "unhealthy",
                    "error": f"Missing {label}: {path}",
                    "activeVMs": len(self.active_vms),
                }

        return {
            "status": "healthy",
            "activeVMs": len(self.active_vms),
            "maxVMs": self.max_concurrent_vms,
            "firecrackerPath": self.firecracker_path,
        }

    async def close(self) -> None:
        """Stop every tracked VM"""
        vm_ids = list(self.active_vms.keys())
        if vm_ids:
            logger.info(f"Stopping {len(vm_ids)} active Firecracker VMs")
        await asyncio.gather(*(self.stop_vm(vm_id) for vm_id in vm_ids))
