"""Tests for environment-driven settings."""

from firecracker_gateway.config import Settings


def _clear(monkeypatch):
    for name in ("PORT", "NODE_ENV", "ENVIRONMENT", "MAX_CONCURRENT_VMS", "FIRECRACKER_PATH"):
        monkeypatch.delenv(name, raising=False)


def test_defaults(monkeypatch):
    _clear(monkeypatch)
    settings = Settings(_env_file=None)

    assert settings.port == 8080
    assert settings.environment == "production"
    assert settings.gateway_port == 5000
    assert settings.api_prefix == "/api/firecracker"
    assert settings.default_timeout_ms == 30000
    assert settings.max_concurrent_vms == 5
    assert settings.start_script == "/opt/firecracker/start-firecracker.sh"
    assert settings.stop_script == "/opt/firecracker/stop-firecracker.sh"


def test_node_env_and_port(monkeypatch):
    _clear(monkeypatch)
    monkeypatch.setenv("NODE_ENV", "development")
    monkeypatch.setenv("PORT", "9090")

    settings = Settings(_env_file=None)

    assert settings.environment == "development"
    assert settings.port == 9090


def test_firecracker_layout(monkeypatch):
    _clear(monkeypatch)
    monkeypatch.setenv("FIRECRACKER_PATH", "/srv/fc")
    monkeypatch.setenv("MAX_CONCURRENT_VMS", "12")

    settings = Settings(_env_file=None)

    assert settings.max_concurrent_vms == 12
    assert settings.kernel_image_path == "/srv/fc/vmlinux-5.10"
    assert settings.rootfs_image_path == "/srv/fc/ubuntu-24.04.ext4"
