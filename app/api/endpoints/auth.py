# app/api/endpoints/auth.py

from fastapi import APIRouter, Depends, Request

from app.api.deps import get_current_principal, get_registry
from app.core.config import settings
from app.core.rate_limiter import limiter
from app.schemas.auth import LoginRequest, LoginResponse, VerifyResponse
from app.schemas.common import MessageResponse
from app.schemas.identity import Principal
from app.services.auth_service import login as login_user

router = APIRouter(prefix="/api/auth", tags=["Auth"])


# -------------------------------------------------------------------
# LOGIN
# -------------------------------------------------------------------
@router.post("/login", response_model=LoginResponse)
@limiter.limit(settings.LOGIN_RATE_LIMIT)
async def login(
    request: Request,
    payload: LoginRequest,
    registry=Depends(get_registry),
):
    return await login_user(registry, payload.email, payload.password)


# -------------------------------------------------------------------
# VERIFY TOKEN
# -------------------------------------------------------------------
@router.get("/verify", response_model=VerifyResponse)
async def verify(principal: Principal = Depends(get_current_principal)):
    return VerifyResponse(valid=True, user_id=principal.user_id)


# -------------------------------------------------------------------
# LOGOUT (tokens are stateless; the client drops it)
# -------------------------------------------------------------------
@router.post("/logout", response_model=MessageResponse)
async def logout(principal: Principal = Depends(get_current_principal)):
    return MessageResponse(message="Logged out")
