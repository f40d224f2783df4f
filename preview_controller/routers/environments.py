"""
Preview environment routes — read-only view of live environments, their
event log and the GC plan, plus on-demand deletion.

Features:
  - Rate limiting per-IP via slowapi
  - Redis Stream integration for the per-environment event log
  - Deletion runs as a background task (202 Accepted)
"""
import logging
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from ..config import settings
from ..controller import Controller, build_controller
from ..models import (
    Backing, EnvironmentListResponse, EnvironmentResponse, ErrorResponse, GCPlanResponse,
    PreviewEnvironment,
)

logger = logging.getLogger("environments")

router = APIRouter(tags=["environments"])
limiter = Limiter(key_func=get_remote_address)


@lru_cache(maxsize=1)
def get_controller() -> Controller:
    return build_controller(settings, logging.getLogger("preview-controller"))


def _to_response(env: PreviewEnvironment, controller: Controller) -> EnvironmentResponse:
    events = controller.events.read(env.name)
    last = events[-1] if events else {}
    return EnvironmentResponse(
        name=env.name,
        namespace=env.namespace,
        backing=env.backing,
        url=env.url,
        phase=last.get("phase") or "Unknown",
        createdAt=events[0].get("timestamp") if events else None,
    )


async def _find(controller: Controller, name: str, backing: Optional[Backing]) -> PreviewEnvironment:
    matches = [
        env for env in await controller.detector.live_environments()
        if env.name == name and (backing is None or env.backing == backing)
    ]
    if not matches:
        raise HTTPException(status_code=404, detail=f"Preview environment '{name}' not found")
    if len(matches) > 1:
        # both clusters hold an environment of this name
        raise HTTPException(
            status_code=409,
            detail=f"Preview environment '{name}' exists on both backings, pass ?backing=",
        )
    return matches[0]


# =========================================================================
# REST Endpoints
# =========================================================================

@router.get("/environments", response_model=EnvironmentListResponse)
@limiter.limit(settings.RATE_LIMIT)
async def list_environments_endpoint(
    request: Request,
    backing: Optional[Backing] = Query(None, description="Filter by backing"),
    controller: Controller = Depends(get_controller),
):
    """List live preview environments on both clusters."""
    envs = await controller.detector.live_environments()
    if backing:
        envs = [e for e in envs if e.backing == backing]
    items = [_to_response(e, controller) for e in envs]
    return EnvironmentListResponse(environments=items, total=len(items))


@router.get("/environments/{name}", response_model=EnvironmentResponse,
            responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}})
@limiter.limit(settings.RATE_LIMIT)
async def get_environment_endpoint(
    name: str,
    request: Request,
    backing: Optional[Backing] = Query(None, description="Backing of the environment"),
    controller: Controller = Depends(get_controller),
):
    env = await _find(controller, name, backing)
    return _to_response(env, controller)


@router.get("/environments/{name}/events")
@limiter.limit(settings.RATE_LIMIT)
async def get_environment_events(name: str, request: Request,
                                 count: int = Query(50, ge=1, le=100),
                                 controller: Controller = Depends(get_controller)):
    """Lifecycle events of an environment, oldest first. Empty without Redis."""
    return {"environment": name, "events": controller.events.read(name, count=count)}


@router.delete("/environments/{name}", status_code=202,
               responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}})
@limiter.limit(settings.RATE_LIMIT)
async def delete_environment_endpoint(
    name: str,
    request: Request,
    background_tasks: BackgroundTasks,
    backing: Optional[Backing] = Query(None, description="Backing of the environment"),
    controller: Controller = Depends(get_controller),
):
    """Delete an environment. Returns 202 Accepted (async deletion)."""
    env = await _find(controller, name, backing)
    background_tasks.add_task(controller.deleter.delete, env)
    logger.info(f"Deletion of {env.name} ({env.namespace}) accepted")
    return {"message": f"Preview environment '{name}' deletion initiated", "status": "accepted"}


@router.get("/gc/plan", response_model=GCPlanResponse)
@limiter.limit(settings.RATE_LIMIT)
async def gc_plan_endpoint(request: Request, controller: Controller = Depends(get_controller)):
    """What the next sweep would delete. Nothing is deleted."""
    _, decisions = await controller.detector.plan()
    return GCPlanResponse(decisions=decisions, toDelete=sum(1 for d in decisions if d.delete))
