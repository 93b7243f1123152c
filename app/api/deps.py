# app/api/deps.py

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.core.database import TenantRegistry
from app.core.exceptions import Unauthorized
from app.schemas.identity import Principal
from app.services.auth_service import get_principal_from_token
from app.services.directory_sync import DirectorySyncService
from app.services.enrollment_service import EnrollmentResolver
from app.services.role_service import RoleScopeResolver


# ------------------------------------------------------------
# HTTP Bearer Authentication (401 rather than FastAPI's default 403)
# ------------------------------------------------------------
bearer_scheme = HTTPBearer(auto_error=False)


# ------------------------------------------------------------
# Tenant registry (one per process, created at startup)
# ------------------------------------------------------------
def get_registry(request: Request) -> TenantRegistry:
    return request.app.state.registry


def get_directory_sync(request: Request) -> DirectorySyncService:
    return request.app.state.directory_sync


def get_role_resolver(registry=Depends(get_registry)) -> RoleScopeResolver:
    return RoleScopeResolver(registry)


def get_enrollment_resolver(registry=Depends(get_registry)) -> EnrollmentResolver:
    return EnrollmentResolver(registry)


# ------------------------------------------------------------
# Current caller from JWT
# ------------------------------------------------------------
async def get_current_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    registry=Depends(get_registry),
) -> Principal:
    if credentials is None or not credentials.credentials:
        raise Unauthorized("Missing bearer token")
    return await get_principal_from_token(registry, credentials.credentials)
