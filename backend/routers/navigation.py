# routers/navigation.py — Route access decisions for the client router
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, model_validator

from auth import Principal, get_optional_principal
from guards import ROUTES, RouteDescriptor, evaluate, match_route
from logging_system import get_logger

router = APIRouter(prefix="/api/v1/navigation", tags=["Navigation"])
logger = get_logger("navigation")


class RouteCheck(BaseModel):
    """Either a ``url`` looked up in the route table, or an explicit route."""
    url: Optional[str] = None
    path: Optional[str] = None
    required_roles: List[str] = []
    required_permissions: List[str] = []
    public: bool = False
    guest_only: bool = False

    @model_validator(mode="after")
    def check_target(self):
        if not self.url and not self.path:
            raise ValueError("Either url or path is required")
        return self

    def descriptor(self) -> RouteDescriptor:
        if self.path is None:
            return match_route(self.url)
        return RouteDescriptor(
            path=self.path,
            required_roles=tuple(self.required_roles),
            required_permissions=tuple(self.required_permissions),
            public=self.public,
            guest_only=self.guest_only,
        )


def _decide(principal: Optional[Principal], route: RouteDescriptor, url: str) -> dict:
    decision = evaluate(principal, route, url)
    if not decision.allowed:
        logger.access_denied(decision.reason, path=route.path, url=url)
    return {"route": route.path, **decision.to_dict()}


@router.post("/evaluate")
async def evaluate_route(
    data: RouteCheck,
    principal: Optional[Principal] = Depends(get_optional_principal),
):
    return _decide(principal, data.descriptor(), data.url or data.path)


@router.get("/check")
async def check_url(
    url: str = Query(..., min_length=1),
    principal: Optional[Principal] = Depends(get_optional_principal),
):
    return _decide(principal, match_route(url), url)


@router.get("/routes")
async def list_routes(principal: Optional[Principal] = Depends(get_optional_principal)):
    """The route table with the caller's access to each entry"""
    return [
        {
            "path": route.path,
            "required_roles": list(route.required_roles),
            "required_permissions": list(route.required_permissions),
            "public": route.public,
            "guest_only": route.guest_only,
            "allowed": evaluate(principal, route).allowed,
        }
        for route in ROUTES
    ]
