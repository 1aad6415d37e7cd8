"""
Runner Pool - Provisioning API

FastAPI application serving the NoCloud seed a freshly cloned VM fetches
on first boot, plus the probes:

  GET /cloud-init/{token}/user-data       - rendered cloud-config (registers the runner)
  GET /cloud-init/{token}/meta-data       - 204
  GET /cloud-init/{token}/vendor-data     - 204
  GET /cloud-init/{token}/network-config  - 204
  GET /health                             - liveness
  GET /ready                              - last reconciliation pass healthy

The token is the only credential. It is verified before any registration
call is made, and failures are answered with a generic body so callers
cannot tell an expired token from a forged one.

Usage:
    app = create_app(settings, tokens, github, renderer, health)
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Response
from fastapi.responses import JSONResponse, PlainTextResponse

from api.cloud_init import BootDocumentRenderer
from controller.registration import RegistrationBackend, register_worker, runner_labels
from controller.tokens import ProvisioningTokens
from core.config import PoolSettings
from core.errors import RunnerPoolError, TokenInvalid
from core.health import HealthChecker
from core.logging import bind

logger = logging.getLogger("runner_pool.api")


def create_app(
    settings: PoolSettings,
    tokens: ProvisioningTokens,
    registration: RegistrationBackend,
    renderer: BootDocumentRenderer,
    health: HealthChecker | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Handlers are plain functions: FastAPI runs them on its threadpool, so
    the blocking registration calls never stall the event loop.
    """
    health = health or HealthChecker()
    labels = runner_labels(settings.label_list)

    app = FastAPI(
        title="Runner Pool",
        version="0.1.0",
        description="Ephemeral GitHub Actions runners on Proxmox",
    )

    # ── NoCloud seed ──────────────────────────────────────────

    @app.get("/cloud-init/{token}/user-data")
    def user_data(token: str):
        try:
            name = tokens.verify(token)
        except TokenInvalid as e:
            logger.warning("rejected provisioning token")
            return JSONResponse(status_code=401, content={"detail": str(e)})

        log = bind(logger, runner=name)
        try:
            jit_config = register_worker(
                registration, name, labels, settings.github_runner_group_id,
            )
        except RunnerPoolError:
            log.exception("runner registration failed")
            return JSONResponse(
                status_code=502,
                content={"detail": "runner registration failed"},
            )

        log.info("serving user-data")
        return PlainTextResponse(renderer.render(runner_name=name, jit_config=jit_config))

    @app.get("/cloud-init/{token}/meta-data")
    def meta_data(token: str):
        return Response(status_code=204)

    @app.get("/cloud-init/{token}/vendor-data")
    def vendor_data(token: str):
        return Response(status_code=204)

    @app.get("/cloud-init/{token}/network-config")
    def network_config(token: str):
        return Response(status_code=204)

    # ── Health ────────────────────────────────────────────────

    @app.get("/health")
    def liveness():
        return JSONResponse(content=health.check_health())

    @app.get("/ready")
    def readiness():
        result = health.check_ready()
        code = 200 if result["status"] == "ok" else 503
        return JSONResponse(status_code=code, content=result)

    return app
