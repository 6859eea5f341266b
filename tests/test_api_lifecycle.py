from __future__ import annotations

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient


class _FakeRuntime(SimpleNamespace):
    """Minimal runtime stub for API lifecycle tests."""


def test_create_app_boot_runtime_false_does_not_attach_runtime() -> None:
    from vaultgate.api.app import create_app

    app = create_app(boot_runtime=False)
    assert getattr(app.state, "gate", None) is None

    with TestClient(app) as _client:
        pass


def test_create_app_boot_runtime_true_attaches_runtime(monkeypatch: pytest.MonkeyPatch) -> None:
    from vaultgate.api import app as api_app

    def _fake_build_gate_runtime():
        return _FakeRuntime(config=SimpleNamespace(mode="dev", supported_chain_id=8453))

    monkeypatch.setattr(api_app, "build_gate_runtime", _fake_build_gate_runtime)

    app = api_app.create_app(boot_runtime=True)
    assert app.state.gate.config.supported_chain_id == 8453

    with TestClient(app) as client:
        body = client.get("/v1/health").json()
        assert body["runtime"] is True
        assert body["chain_id"] == 8453


def test_docs_disabled_in_prod(monkeypatch: pytest.MonkeyPatch) -> None:
    from vaultgate.api.app import create_app

    monkeypatch.setenv("VAULTGATE_MODE", "prod")
    monkeypatch.delenv("VAULTGATE_CORS_ORIGINS", raising=False)
    with TestClient(create_app(boot_runtime=False)) as c:
        assert c.get("/docs").status_code == 404

    monkeypatch.setenv("VAULTGATE_MODE", "dev")
    with TestClient(create_app(boot_runtime=False)) as c:
        assert c.get("/docs").status_code == 200
