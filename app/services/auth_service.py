# app/services/auth_service.py

from datetime import timedelta

import jwt
from loguru import logger

from app.core.config import settings
from app.core.exceptions import Forbidden, Unauthorized
from app.core.security import create_access_token, decode_token, verify_password
from app.models.enums import UserStatus
from app.models.user import GlobalUser
from app.schemas.auth import DepartmentRole, LoginResponse
from app.schemas.identity import Principal
from app.services.role_service import RoleScopeResolver


# ============================================================================
# AUTHENTICATE (email + password)
# ============================================================================
async def authenticate_user(registry, email: str, password: str) -> GlobalUser:
    async with registry.central() as central:
        user = await central.get_user_by_email(email)

    if not user or not verify_password(password, user.password_hash):
        logger.warning(f"Failed login for '{email}'")
        raise Unauthorized("Invalid email or password")

    if user.status != UserStatus.Active.value:
        logger.warning(f"Login refused for inactive account '{email}' ({user.status})")
        raise Forbidden("Account is not active")

    return user


# ============================================================================
# CREATE LOGIN RESPONSE
# ============================================================================
async def create_login_response(registry, user: GlobalUser) -> LoginResponse:
    resolver = RoleScopeResolver(registry)
    principal = await resolver.resolve(user.user_id)
    profile = await resolver.resolve_profile(principal)

    expires = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    token = create_access_token(user.user_id, user.email, expires_delta=expires)

    username = profile.display_name if profile and profile.display_name else user.email

    return LoginResponse(
        token=token,
        expires_in=int(expires.total_seconds()),
        user_id=user.user_id,
        username=username,
        email=user.email,
        roles=[r.name for r in principal.roles],
        department_roles=[
            DepartmentRole(
                dept_id=link.dept_id,
                department_name=link.department_name,
                schema_prefix=link.schema_prefix,
                role=link.role_name,
            )
            for link in principal.department_links
        ],
    )


async def login(registry, email: str, password: str) -> LoginResponse:
    user = await authenticate_user(registry, email, password)
    response = await create_login_response(registry, user)
    logger.info(f"User {user.user_id} logged in")
    return response


# ============================================================================
# TOKEN -> PRINCIPAL
# ============================================================================
async def get_principal_from_token(registry, token: str) -> Principal:
    try:
        payload = decode_token(token)
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token has expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Could not validate credentials")

    user_id = payload.get("userId")
    if user_id is None:
        raise Unauthorized("Invalid token payload")

    async with registry.central() as central:
        user = await central.get_user(int(user_id))

    if user is None:
        raise Unauthorized("User not found")
    if user.status != UserStatus.Active.value:
        raise Unauthorized("Account is not active")

    return Principal(user_id=user.user_id, email=user.email)
