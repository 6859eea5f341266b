from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient


def _find_rate_limit_instance(app: FastAPI):
    """Walk the middleware stack to find the live RateLimitMiddleware instance."""

    cur = app.middleware_stack
    while cur is not None:
        if cur.__class__.__name__ == "RateLimitMiddleware":
            return cur
        cur = getattr(cur, "app", None)
    return None


def _app(**kwargs) -> FastAPI:
    from vaultgate.api.security import RateLimitMiddleware

    app = FastAPI()

    @app.get("/ping")
    def _ping():
        return {"ok": True}

    @app.post("/ping")
    def _ping_post():
        return {"ok": True}

    app.add_middleware(RateLimitMiddleware, **kwargs)
    return app


def test_rate_limit_prunes_by_ttl(monkeypatch: pytest.MonkeyPatch) -> None:
    import vaultgate.api.security as sec

    monkeypatch.setenv("VAULTGATE_TRUST_PROXY_HEADERS", "1")
    monkeypatch.delenv("VAULTGATE_RL_DISABLE", raising=False)

    t = 1_000.0

    def _now() -> float:
        return float(t)

    monkeypatch.setattr(sec.time, "time", _now)

    app = _app(ttl_s=10, max_keys=1000, prune_every=1)

    with TestClient(app) as client:
        for i in range(50):
            r = client.get("/ping", headers={"x-forwarded-for": f"203.0.113.{i}"})
            assert r.status_code == 200

        rl = _find_rate_limit_instance(app)
        assert rl is not None
        before = len(rl._buckets)
        assert before >= 50

        t += 60.0

        r = client.get("/ping", headers={"x-forwarded-for": "203.0.113.250"})
        assert r.status_code == 200
        assert len(rl._buckets) <= 5


def test_rate_limit_prunes_by_max_keys(monkeypatch: pytest.MonkeyPatch) -> None:
    import vaultgate.api.security as sec

    monkeypatch.setenv("VAULTGATE_TRUST_PROXY_HEADERS", "1")
    monkeypatch.delenv("VAULTGATE_RL_DISABLE", raising=False)

    t = 5_000.0

    def _now() -> float:
        return float(t)

    monkeypatch.setattr(sec.time, "time", _now)

    app = _app(ttl_s=0, max_keys=3, prune_every=1)

    with TestClient(app) as client:
        for i in range(4):
            t += 1.0
            r = client.get("/ping", headers={"x-forwarded-for": f"198.51.100.{i}"})
            assert r.status_code == 200

        rl = _find_rate_limit_instance(app)
        assert rl is not None
        assert len(rl._buckets) == 3


def test_write_burst_is_limited_and_refills(monkeypatch: pytest.MonkeyPatch) -> None:
    import vaultgate.api.security as sec

    monkeypatch.delenv("VAULTGATE_RL_DISABLE", raising=False)

    t = 9_000.0

    def _now() -> float:
        return float(t)

    monkeypatch.setattr(sec.time, "time", _now)

    app = _app(write_bucket=sec.TokenBucket(rate_per_sec=1.0, burst=3.0))

    with TestClient(app) as client:
        codes = [client.post("/ping").status_code for _ in range(4)]
        assert codes == [200, 200, 200, 429]
        assert client.post("/ping").json()["error"]["code"] == "rate_limited"

        # Reads use their own bucket.
        assert client.get("/ping").status_code == 200

        t += 2.0
        assert client.post("/ping").status_code == 200
