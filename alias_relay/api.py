"""
FastAPI status application for the relay.

Exposes a health payload describing listeners and the background task pool,
plus the Prometheus metrics. When an API token is configured every request
must carry it in the ``X-API-Token`` header.
"""

from typing import AsyncContextManager, Callable, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Reject the request with ``401`` when it does not carry the configured token."""
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


class TaskPoolStatus(BaseModel):
    running: bool
    workers: int
    pending: int
    completed: int
    failed: int
    dropped: int


class StatusResponse(BaseModel):
    """Health payload returned by ``GET /status``."""
    ok: bool
    listeners: List[str] = Field(default_factory=list)
    private_mailbox_configured: bool
    allowed_domains: List[str] = Field(default_factory=list)
    spf_enabled: bool
    tasks: Optional[TaskPoolStatus] = None


def create_app(
    relay,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Build the status API around a :class:`RelayServer`.

    ``lifespan`` lets the ASGI server start and stop the relay with the app.
    """
    api = FastAPI(title="Alias Relay", lifespan=lifespan)
    api.state.api_token = api_token
    auth_dependency = Depends(require_token)

    @api.get("/status", response_model=StatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def relay_status():
        """Return listeners, configuration flags and task pool counters."""
        pool = relay.pool
        smtp = relay.config.smtp
        return StatusResponse(
            ok=pool.running,
            listeners=list(relay.listeners),
            private_mailbox_configured=bool(smtp.private_email),
            allowed_domains=list(smtp.allowed_domains),
            spf_enabled=smtp.enable_spf,
            tasks=TaskPoolStatus(
                running=pool.running,
                workers=pool.workers,
                pending=pool.pending,
                completed=pool.completed,
                failed=pool.failed,
                dropped=pool.dropped,
            ),
        )

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the relay."""
        return Response(content=relay.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    return api
