"""
Worker status API.

Endpoints (per worker):
    GET /status   - lifecycle state, last transitions, active sessions
    GET /healthz  - 200 when READY, 503 otherwise

With several workers each one is mounted under ``/workers/{machine}:{worker}``
and the root ``/healthz`` is healthy only when every worker is READY.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

from fastapi import APIRouter, FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .lifecycle import LifecycleController

logger = logging.getLogger(__name__)


# ============================================================================
# Response Models
# ============================================================================


class TransitionModel(BaseModel):
    from_state: str = Field(..., alias='from')
    to_state: str = Field(..., alias='to')
    event: str
    timestamp: float
    error: Optional[str] = None


class WorkerStatus(BaseModel):
    worker: Optional[str] = None
    state: str
    is_ready: bool
    error: Optional[str] = None
    history: List[TransitionModel] = Field(default_factory=list)
    sessions: List[Dict[str, Any]] = Field(default_factory=list)


class HealthStatus(BaseModel):
    status: str
    state: str


# ============================================================================
# Routers
# ============================================================================


def create_status_router(controller: LifecycleController) -> APIRouter:
    router = APIRouter(tags=['Worker Status'])

    @router.get('/status', response_model=WorkerStatus, response_model_by_alias=True)
    async def get_status() -> Dict[str, Any]:
        return controller.get_status()

    @router.get('/healthz', response_model=HealthStatus)
    async def healthz():
        state = controller.get_state().value
        if controller.is_ready():
            return {'status': 'ok', 'state': state}
        return JSONResponse(
            status_code=503, content={'status': 'unavailable', 'state': state}
        )

    return router


def create_status_app(
    controllers: Mapping[str, LifecycleController],
) -> FastAPI:
    """Build the status app for one or more workers keyed by worker key."""
    app = FastAPI(title='Chat Worker Status')

    if len(controllers) == 1:
        (controller,) = controllers.values()
        app.include_router(create_status_router(controller))
        return app

    for key, controller in controllers.items():
        app.include_router(
            create_status_router(controller), prefix=f'/workers/{key}'
        )

    @app.get('/healthz')
    async def healthz():
        states = {k: c.get_state().value for k, c in controllers.items()}
        ready = all(c.is_ready() for c in controllers.values())
        return JSONResponse(
            status_code=200 if ready else 503,
            content={'status': 'ok' if ready else 'degraded', 'workers': states},
        )

    @app.get('/status')
    async def status() -> Dict[str, Any]:
        return {
            'workers': {k: c.get_status() for k, c in controllers.items()}
        }

    return app
