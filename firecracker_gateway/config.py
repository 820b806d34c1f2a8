from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings"""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    # Service configuration
    debug: bool = False
    log_level: str = "INFO"
    service_name: str = "firecracker-gateway"
    environment: str = Field(
        default="production",
        validation_alias=AliasChoices("NODE_ENV", "ENVIRONMENT", "environment"),
    )

    # Stub API server
    port: int = 8080

    # Execution gateway
    gateway_host: str = "0.0.0.0"
    gateway_port: int = 5000
    api_prefix: str = "/api/firecracker"

    # Request timeout handling (milliseconds)
    default_timeout_ms: float = 30000
    # When enabled the gateway cancels backend calls that outlive
    # timeout + grace; otherwise the timeout is only forwarded.
    enforce_timeout: bool = True
    timeout_grace_ms: float = 10000

    # Firecracker host layout
    firecracker_path: str = "/opt/firecracker"
    firecracker_binary: str = "/usr/local/bin/firecracker"
    firecracker_kernel_image: str = "vmlinux-5.10"
    firecracker_rootfs_image: str = "ubuntu-24.04.ext4"

    # VM lifecycle limits (seconds unless noted)
    max_concurrent_vms: int = 5
    vm_startup_timeout: float = 60.0
    vm_stop_timeout: float = 10.0
    vm_poll_interval: float = 0.5

    # Tracing
    enable_tracing: bool = False
    otel_service_name: str = "firecracker-gateway"
    otel_exporter_otlp_endpoint: Optional[str] = None

    @property
    def start_script(self) -> str:
        """Path of the VM start script"""
        return str(Path(self.firecracker_path) / "start-firecracker.sh")

    @property
    def stop_script(self) -> str:
        """Path of the VM stop script"""
        return str(Path(self.firecracker_path) / "stop-firecracker.sh")

    @property
    def kernel_image_path(self) -> str:
        return str(Path(self.firecracker_path) / self.firecracker_kernel_image)

    @property
    def rootfs_image_path(self) -> str:
        return str(Path(self.firecracker_path) / self.firecracker_rootfs_image)
