# app/api/endpoints/profile.py

from fastapi import APIRouter, Depends

from app.api.deps import get_current_principal, get_role_resolver
from app.schemas.identity import Principal, ProfileResponse
from app.services.role_service import RoleScopeResolver

router = APIRouter(prefix="/api/profile", tags=["Profile"])


@router.get("/me", response_model=ProfileResponse)
async def my_profile(
    principal: Principal = Depends(get_current_principal),
    resolver: RoleScopeResolver = Depends(get_role_resolver),
):
    resolved = await resolver.resolve(principal.user_id)
    profile = await resolver.resolve_profile(resolved)
    return ProfileResponse(
        user_id=resolved.user_id,
        email=resolved.email,
        roles=resolved.roles,
        department_links=resolved.department_links,
        profile=profile,
    )
