"""
Tests for the execution gateway routes.

The backend is replaced by an AsyncMock so only request parsing, the
file-map transform and response shaping are exercised here.
"""

import asyncio
import pytest
from unittest.mock import AsyncMock, patch
from fastapi.testclient import TestClient

from firecracker_gateway.backends import ExecutionBackend, ExecutionResult
from firecracker_gateway.config import Settings
from firecracker_gateway.main import create_app

PREFIX = "/api/firecracker"


@pytest.fixture
def backend():
    """Mocked execution backend"""
    mock = AsyncMock(spec=ExecutionBackend)
    mock.execute_code.return_value = {
        "success": True,
        "output": "hi",
        "error": None,
        "executionTime": 12,
    }
    return mock


@pytest.fixture
def settings():
    return Settings(enforce_timeout=True, timeout_grace_ms=10000, debug=False)


@pytest.fixture
def client(backend, settings):
    return TestClient(create_app(settings, backend=backend))


def _run_body(**overrides):
    body = {
        "files": [{"name": "main.py", "content": "print('hi')"}],
        "language": "python",
    }
    body.update(overrides)
    return body


class TestRunEnvelope:
    """Response shaping for POST /run"""

    def test_success_envelope(self, client):
        resp = client.post(f"{PREFIX}/run", json=_run_body())

        assert resp.status_code == 200
        assert resp.json() == {
            "success": True,
            "output": "hi",
            "stdout": "hi",
            "stderr": None,
            "error": None,
            "executionTime": 12,
            "logs": [],
        }

    def test_backend_reported_failure_is_200(self, client, backend):
        backend.execute_code.return_value = {"success": False, "error": "compile error"}

        resp = client.post(f"{PREFIX}/run", json=_run_body())

        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is False
        assert data["error"] == "compile error"
        assert data["stderr"] == "compile error"
        assert data["logs"] == []

    def test_success_keeps_stderr_but_clears_error(self, client, backend):
        backend.execute_code.return_value = ExecutionResult(
            success=True,
            output="done",
            error="warning: unused variable",
            execution_time=40,
            logs=["boot", "run"],
        )

        resp = client.post(f"{PREFIX}/run", json=_run_body())

        data = resp.json()
        assert data["stderr"] == "warning: unused variable"
        assert data["error"] is None
        assert data["stdout"] == "done"
        assert data["logs"] == ["boot", "run"]
        assert data["executionTime"] == 40

    def test_backend_exception_is_500(self, client, backend):
        backend.execute_code.side_effect = RuntimeError("boom")

        resp = client.post(f"{PREFIX}/run", json=_run_body())

        assert resp.status_code == 500
        assert resp.json() == {
            "success": False,
            "error": "boom",
            "output": None,
            "stderr": "boom",
        }

    def test_exception_without_message_uses_fallback(self, client, backend):
        backend.execute_code.side_effect = RuntimeError()

        resp = client.post(f"{PREFIX}/run", json=_run_body())

        assert resp.status_code == 500
        assert resp.json()["error"] == "Execution failed"
        assert resp.json()["stderr"] == ""

    def test_malformed_backend_result_is_500(self, client, backend):
        backend.execute_code.return_value = {"output": "missing success flag"}

        resp = client.post(f"{PREFIX}/run", json=_run_body())

        assert resp.status_code == 500
        assert resp.json()["success"] is False


class TestRunDelegation:
    """What the gateway hands to the backend"""

    def test_duplicate_names_last_write_wins(self, client, backend):
        files = [
            {"name": "a.py", "content": "first"},
            {"name": "b.py", "content": "other"},
            {"name": "a.py", "content": "second"},
        ]

        resp = client.post(f"{PREFIX}/run", json=_run_body(files=files))

        assert resp.status_code == 200
        file_map, language, timeout = backend.execute_code.await_args.args
        assert file_map == {"a.py": "second", "b.py": "other"}
        assert set(file_map) == {"a.py", "b.py"}
        assert language == "python"

    def test_default_timeout(self, client, backend):
        client.post(f"{PREFIX}/run", json=_run_body())

        assert backend.execute_code.await_args.args[2] == 30000

    def test_explicit_timeout_forwarded(self, client, backend):
        client.post(f"{PREFIX}/run", json=_run_body(timeout=5000))

        assert backend.execute_code.await_args.args[2] == 5000

    def test_numeric_string_timeout_accepted(self, client, backend):
        resp = client.post(f"{PREFIX}/run", json=_run_body(timeout="2500"))

        assert resp.status_code == 200
        assert backend.execute_code.await_args.args[2] == 2500

    def test_empty_file_list(self, client, backend):
        resp = client.post(f"{PREFIX}/run", json=_run_body(files=[]))

        assert resp.status_code == 200
        assert backend.execute_code.await_args.args[0] == {}


class TestRunValidation:
    """Request validation returns 400"""

    def _messages(self, resp):
        return [e["message"] for e in resp.json()["errors"]]

    def test_files_must_be_array(self, client, backend):
        resp = client.post(f"{PREFIX}/run", json=_run_body(files="main.py"))

        assert resp.status_code == 400
        assert resp.json()["success"] is False
        assert "Files must be an array" in self._messages(resp)
        backend.execute_code.assert_not_awaited()

    def test_language_must_be_string(self, client, backend):
        resp = client.post(f"{PREFIX}/run", json=_run_body(language=42))

        assert resp.status_code == 400
        assert "Language must be specified" in self._messages(resp)

    def test_language_required(self, client):
        body = _run_body()
        del body["language"]

        resp = client.post(f"{PREFIX}/run", json=body)

        assert resp.status_code == 400
        assert "Language must be specified" in self._messages(resp)

    def test_timeout_must_be_numeric(self, client):
        resp = client.post(f"{PREFIX}/run", json=_run_body(timeout="soon"))

        assert resp.status_code == 400
        assert "Timeout must be numeric" in self._messages(resp)

    def test_null_timeout_rejected(self, client):
        resp = client.post(f"{PREFIX}/run", json=_run_body(timeout=None))

        assert resp.status_code == 400
        assert "Timeout must be numeric" in self._messages(resp)

    @pytest.mark.parametrize("timeout", ["NaN", "Infinity", "-Infinity", "1e3", " 5", True])
    def test_non_numeric_timeout_values_rejected(self, client, backend, timeout):
        resp = client.post(f"{PREFIX}/run", json=_run_body(timeout=timeout))

        assert resp.status_code == 400
        assert "Timeout must be numeric" in self._messages(resp)
        backend.execute_code.assert_not_awaited()

    @pytest.mark.parametrize("literal", ["NaN", "Infinity", "-Infinity"])
    def test_non_finite_json_timeout_rejected(self, client, backend, literal):
        body = '{"files": [], "language": "python", "timeout": %s}' % literal

        resp = client.post(
            f"{PREFIX}/run",
            content=body,
            headers={"Content-Type": "application/json"},
        )

        assert resp.status_code == 400
        assert "Timeout must be numeric" in self._messages(resp)
        backend.execute_code.assert_not_awaited()

    def test_decimal_string_timeout_accepted(self, client, backend):
        resp = client.post(f"{PREFIX}/run", json=_run_body(timeout="1500.5"))

        assert resp.status_code == 200
        assert backend.execute_code.await_args.args[2] == 1500.5

    def test_bad_file_entry_reports_location(self, client):
        resp = client.post(
            f"{PREFIX}/run", json=_run_body(files=[{"content": "no name"}])
        )

        assert resp.status_code == 400
        fields = [e["field"] for e in resp.json()["errors"]]
        assert "files.0.name" in fields


class TestRunTimeout:
    """Outer timeout enforced by the gateway"""

    def test_slow_backend_times_out(self, backend):
        async def _hang(*args, **kwargs):
            await asyncio.sleep(5)

        backend.execute_code.side_effect = _hang
        settings = Settings(enforce_timeout=True, timeout_grace_ms=0)
        client = TestClient(create_app(settings, backend=backend))

        resp = client.post(f"{PREFIX}/run", json=_run_body(timeout=50))

        assert resp.status_code == 500
        assert resp.json()["error"] == "Execution timed out after 50ms"

    def test_pass_through_when_disabled(self, backend):
        settings = Settings(enforce_timeout=False)
        client = TestClient(create_app(settings, backend=backend))

        resp = client.post(f"{PREFIX}/run", json=_run_body(timeout=1))

        assert resp.status_code == 200
        assert backend.execute_code.await_args.args[2] == 1


class TestStatus:
    """GET /status/{vm_id}"""

    def test_status_wrapped(self, client, backend):
        backend.get_vm_status.return_value = {"state": "running"}

        resp = client.get(f"{PREFIX}/status/abc123")

        assert resp.status_code == 200
        assert resp.json() == {"status": {"state": "running"}}
        backend.get_vm_status.assert_awaited_once_with("abc123")

    def test_status_error_hides_detail(self, client, backend):
        backend.get_vm_status.side_effect = RuntimeError("socket exploded")

        resp = client.get(f"{PREFIX}/status/abc123")

        assert resp.status_code == 500
        assert resp.json() == {"error": "Failed to get execution status"}


class TestAdminRoutes:
    """Active VM listing, stop and backend health"""

    def test_active_vms(self, client, backend):
        backend.list_active_vms.return_value = [{"vmId": "vm-1"}, {"vmId": "vm-2"}]

        resp = client.get(f"{PREFIX}/active")

        assert resp.status_code == 200
        assert resp.json()["count"] == 2

    def test_stop_vm(self, client, backend):
        resp = client.post(f"{PREFIX}/stop/vm-1")

        assert resp.status_code == 200
        assert resp.json() == {"message": "VM stopped successfully"}
        backend.stop_vm.assert_awaited_once_with("vm-1")

    def test_stop_vm_failure(self, client, backend):
        backend.stop_vm.side_effect = RuntimeError("stuck")

        resp = client.post(f"{PREFIX}/stop/vm-1")

        assert resp.status_code == 500
        assert resp.json() == {"error": "Failed to stop VM", "details": "stuck"}

    def test_backend_health(self, client, backend):
        backend.health_check.return_value = {"status": "healthy", "activeVMs": 0}

        resp = client.get(f"{PREFIX}/health")

        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"


class TestServiceRoutes:
    """Service-level health, metrics and missing backend"""

    def test_health(self, client):
        resp = client.get("/health/")

        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    def test_live(self, client):
        assert client.get("/health/live").json() == {"alive": True}

    def test_ready_reflects_backend_health(self, client, backend):
        backend.health_check.return_value = {"status": "unhealthy", "error": "x"}

        data = client.get("/health/ready").json()

        assert data["ready"] is False
        assert data["checks"] == {"backend": True, "firecracker": False}

    def test_ready_survives_backend_health_error(self, client, backend):
        backend.health_check.side_effect = RuntimeError("no /dev/kvm")

        resp = client.get("/health/ready")

        assert resp.status_code == 200
        assert resp.json()["checks"] == {"backend": True, "firecracker": False}
        assert resp.json()["ready"] is False

    def test_root(self, client):
        assert client.get("/").json()["status"] == "running"

    def test_metrics_exposed(self, client):
        client.post(f"{PREFIX}/run", json=_run_body())

        resp = client.get("/metrics/")

        assert resp.status_code == 200
        assert "gateway_executions_total" in resp.text

    def test_missing_backend_is_503(self, settings):
        client = TestClient(create_app(settings))

        resp = client.post(f"{PREFIX}/run", json=_run_body())

        assert resp.status_code == 503


class TestLifespan:
    """Backend ownership across application startup and shutdown"""

    def test_creates_and_closes_backend(self, settings):
        owned = AsyncMock(spec=ExecutionBackend)
        owned.get_vm_status.return_value = {"state": "running"}
        app = create_app(settings)

        with patch("firecracker_gateway.main.create_backend", return_value=owned) as factory:
            with TestClient(app) as client:
                factory.assert_called_once_with(settings)
                assert app.state.backend is owned
                resp = client.get(f"{PREFIX}/status/vm-1")
                assert resp.json() == {"status": {"state": "running"}}
                owned.close.assert_not_awaited()

        owned.close.assert_awaited_once()
        assert app.state.backend is None

    def test_injected_backend_is_not_closed(self, settings, backend):
        app = create_app(settings, backend=backend)

        with patch("firecracker_gateway.main.create_backend") as factory:
            with TestClient(app) as client:
                assert client.get("/health/live").status_code == 200

        factory.assert_not_called()
        backend.close.assert_not_awaited()
        assert app.state.backend is backend
