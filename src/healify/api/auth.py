"""
Authentication utilities for the API.

Clients authenticate with their project API key, sent either as a bearer
token or in the ``X-API-Key`` header; a key resolves to the project that
owns it. Registering a project is an operator action guarded by the
``X-Admin-Key`` header.
"""

import logging
import secrets
from typing import Optional
from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..core.config import Settings
from ..core.models import Project
from ..services.healing_orchestrator import TestRunOrchestrator
from .dependencies import get_orchestrator, get_settings

logger = logging.getLogger(__name__)

# Security scheme for bearer token authentication
security = HTTPBearer(auto_error=False)


def extract_api_key(credentials: Optional[HTTPAuthorizationCredentials],
                    x_api_key: Optional[str]) -> Optional[str]:
    if credentials and credentials.credentials:
        return credentials.credentials
    return x_api_key or None


async def resolve_project(orchestrator: TestRunOrchestrator, api_key: Optional[str]) -> Project:
    """
    Resolve an API key to its project.

    Raises:
        HTTPException: 401 if the key is missing or unknown
    """
    if not api_key:
        raise HTTPException(
            status_code=401,
            detail="Missing API key",
            headers={"WWW-Authenticate": "Bearer"}
        )

    project = await orchestrator.authenticate(api_key)
    if project is None:
        logger.warning("Rejected request with an unknown API key")
        raise HTTPException(
            status_code=401,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "Bearer"}
        )
    return project


async def get_current_project(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    orchestrator: TestRunOrchestrator = Depends(get_orchestrator),
) -> Project:
    """Dependency returning the project authenticated by the request's API key."""
    return await resolve_project(orchestrator, extract_api_key(credentials, x_api_key))


def ensure_project_access(project: Project, project_id: str) -> None:
    """Reject access to another project's data with 404, so ids do not leak."""
    if project.id != project_id:
        raise HTTPException(status_code=404, detail=f"Project {project_id} not found")


async def require_admin(
    x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key"),
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Guard for operator-only routes such as project registration.

    Raises:
        HTTPException: 403 if no admin key is configured, 401 if the
            request's key is missing or wrong
    """
    if not settings.ADMIN_API_KEY:
        raise HTTPException(status_code=403, detail="Project registration is disabled")
    if not x_admin_key or not secrets.compare_digest(x_admin_key, settings.ADMIN_API_KEY):
        logger.warning("Rejected project registration with a missing or invalid admin key")
        raise HTTPException(status_code=401, detail="Invalid admin key")
