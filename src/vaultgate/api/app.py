# src/vaultgate/api/app.py
from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from vaultgate.api.errors import ApiError, from_gate_error
from vaultgate.api.routes_gate import router as gate_router
from vaultgate.api.security import RateLimitMiddleware, RequestSizeLimitMiddleware
from vaultgate.api.structured_logging import RequestLogMiddleware, configure_structured_logging
from vaultgate.gate.errors import GateError
from vaultgate.runtime.gate_boot import GateRuntime
from vaultgate.runtime.gate_boot import build_gate_runtime as _build_gate_runtime
from vaultgate.runtime.log_events import log_event

log = logging.getLogger("vaultgate.http")


def build_gate_runtime() -> GateRuntime:
    """Build the gate runtime for the API.

    Tests monkeypatch `vaultgate.api.app.build_gate_runtime` to inject an
    in-memory store and a fake balance source.
    """
    return _build_gate_runtime()


def _parse_cors_origins() -> List[str]:
    """CORS allowlist from VAULTGATE_CORS_ORIGINS.

    Unset means CORS disabled. Wildcard "*" is rejected in VAULTGATE_MODE=prod.
    """
    raw = os.environ.get("VAULTGATE_CORS_ORIGINS", "").strip()
    mode = os.environ.get("VAULTGATE_MODE", "prod").strip().lower()

    if not raw:
        return []

    origins = [o.strip() for o in raw.split(",") if o.strip()]
    if "*" in origins:
        if mode == "prod":
            raise RuntimeError(
                "Unsafe CORS configuration: wildcard '*' not allowed in production. "
                "Set explicit origins in VAULTGATE_CORS_ORIGINS."
            )
        return ["*"]
    return origins


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def _api_error(request: Request, exc: ApiError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_json())

    @app.exception_handler(GateError)
    async def _gate_error(request: Request, exc: GateError) -> JSONResponse:
        err = from_gate_error(exc)
        log_event(log, "gate_error", path=str(request.url.path), code=exc.code, reason=exc.reason, status=err.status_code)
        return JSONResponse(status_code=err.status_code, content=err.to_json())

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        err = ApiError.bad_request(
            "invalid_request", "request failed validation", {"errors": jsonable_encoder(exc.errors())}
        )
        return JSONResponse(status_code=400, content=err.to_json())

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        log.exception("unhandled error on %s", request.url.path)
        return JSONResponse(status_code=500, content=ApiError.internal("internal_error", "internal error").to_json())


def create_app(*, boot_runtime: bool = True) -> FastAPI:
    """Create the FastAPI application.

    boot_runtime:
      - True (default): load gate config and attach app.state.gate
      - False: no runtime; gate routes answer 500 not_ready
    """
    mode = os.environ.get("VAULTGATE_MODE", "prod").strip().lower()
    configure_structured_logging()

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        rt = getattr(app.state, "gate", None)
        log_event(log, "api_start", mode=mode, runtime=rt is not None)
        yield
        log_event(log, "api_stop")

    if mode == "prod":
        app = FastAPI(
            title="Vaultgate API",
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
            lifespan=_lifespan,
        )
    else:
        app = FastAPI(title="Vaultgate API", lifespan=_lifespan)

    app.state.gate = build_gate_runtime() if boot_runtime else None

    _install_error_handlers(app)

    # Last added runs first: request log wraps everything, size limit is earliest reject.
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(RequestSizeLimitMiddleware)

    cors_origins = _parse_cors_origins()
    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type", "X-Vaultgate-Admin-Token"],
        )

    app.add_middleware(RequestLogMiddleware)

    app.include_router(gate_router, prefix="/v1", tags=["gate"])

    return app
