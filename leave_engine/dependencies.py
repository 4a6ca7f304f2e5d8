"""Shared FastAPI dependencies."""

from dataclasses import dataclass

from fastapi import Header, Request

from leave_engine.config import Settings


@dataclass(frozen=True)
class Caller:
    """Who is calling, as asserted by the fronting gateway."""

    org_id: int
    user_id: str


async def get_caller(
    x_org_id: int = Header(..., alias="X-Org-Id", ge=1),
    x_user_id: str = Header(..., alias="X-User-Id", min_length=1),
) -> Caller:
    """Caller identity from the ``X-Org-Id`` / ``X-User-Id`` headers.

    Authentication happens upstream; this service trusts the headers.
    """
    return Caller(org_id=x_org_id, user_id=x_user_id.strip())


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings
