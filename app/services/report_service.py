# app/services/report_service.py

from typing import Any

from loguru import logger

from app.core.exceptions import Forbidden
from app.models.enums import ReportKind, ROLE_CENTRAL_ADMIN
from app.services.role_service import RoleScopeResolver, holds_role


async def get_report(registry, kind: ReportKind, requesting_user_id: int) -> list[dict[str, Any]]:
    """
    Rows of one central report view, verbatim. Roles are re-read on every
    call so a revoked central_admin loses access immediately.
    """
    principal = await RoleScopeResolver(registry).resolve(requesting_user_id)
    if not holds_role(principal, ROLE_CENTRAL_ADMIN):
        logger.warning(f"User {requesting_user_id} denied report '{kind.value}'")
        raise Forbidden("Central admin access required")

    async with registry.central() as central:
        rows = await central.fetch_report(kind)

    logger.info(f"Report '{kind.value}' served to user {requesting_user_id} ({len(rows)} rows)")
    return rows
