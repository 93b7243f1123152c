# app/services/role_service.py

from typing import Awaitable, Callable, Optional

from loguru import logger

from app.core.exceptions import Forbidden, NotFound
from app.models.enums import (
    ProfileSource,
    RoleScope,
    ROLE_ADMIN,
    ROLE_CENTRAL_ADMIN,
    ROLE_DEPARTMENT_ADMIN,
)
from app.schemas.identity import (
    DepartmentLink,
    ProfileRead,
    ResolvedPrincipal,
    RoleRead,
)
from app.services.identity_map import IdentityMap


# ============================================================================
# PREDICATES
# ============================================================================
def is_central_admin(principal: ResolvedPrincipal) -> bool:
    return any(
        r.name in (ROLE_ADMIN, ROLE_CENTRAL_ADMIN) and r.scope == RoleScope.Central.value
        for r in principal.roles
    )


def holds_role(principal: ResolvedPrincipal, role_name: str) -> bool:
    return role_name in principal.role_names()


def is_department_admin(principal: ResolvedPrincipal) -> bool:
    return holds_role(principal, ROLE_DEPARTMENT_ADMIN) or any(
        link.role_name == ROLE_DEPARTMENT_ADMIN for link in principal.department_links
    )


def has_department_link(principal: ResolvedPrincipal) -> bool:
    return bool(principal.department_links)


class RoleScopeResolver:
    """Roles, department links and profile source for a central user id."""

    def __init__(self, registry, identity_map: Optional[IdentityMap] = None):
        self.registry = registry
        self.identity_map = identity_map or IdentityMap(registry)

        # Evaluated top-down; the first predicate that holds picks the source.
        self.profile_sources: list[
            tuple[Callable[[ResolvedPrincipal], bool], Callable[[ResolvedPrincipal], Awaitable[Optional[ProfileRead]]]]
        ] = [
            (is_central_admin, self._central_profile),
            (is_department_admin, self._central_profile),
            (has_department_link, self._department_profile),
            (lambda _principal: True, self._central_profile),
        ]

    # ----------------------------------------------------
    # Roles
    # ----------------------------------------------------
    async def resolve(self, user_id: int) -> ResolvedPrincipal:
        async with self.registry.central() as central:
            user = await central.get_user(user_id)
            if user is None:
                raise NotFound(f"User {user_id} not found")
            roles = await central.list_roles(user_id)
            links = await central.list_department_links(user_id)

        return ResolvedPrincipal(
            user_id=user.user_id,
            email=user.email,
            status=user.status,
            roles=[RoleRead(**r) for r in roles],
            department_links=[DepartmentLink(**l) for l in links],
        )

    def administered_department(
        self, principal: ResolvedPrincipal, department_id: int | None = None
    ) -> DepartmentLink:
        """The department a department_admin acts for; Forbidden when there is none."""
        links = [l for l in principal.department_links if l.role_name == ROLE_DEPARTMENT_ADMIN]
        if department_id is not None:
            links = [l for l in links if l.dept_id == department_id]
        if not links:
            raise Forbidden("Department admin access required")
        return links[0]

    # ----------------------------------------------------
    # Profile
    # ----------------------------------------------------
    async def resolve_profile(self, principal: ResolvedPrincipal) -> Optional[ProfileRead]:
        for predicate, source in self.profile_sources:
            if predicate(principal):
                return await source(principal)
        return None

    async def _central_profile(self, principal: ResolvedPrincipal) -> Optional[ProfileRead]:
        async with self.registry.central() as central:
            profile = await central.get_central_profile(principal.user_id)
        if profile is None:
            return None
        return ProfileRead(source=ProfileSource.Central, **profile.model_dump())

    async def _department_profile(self, principal: ResolvedPrincipal) -> Optional[ProfileRead]:
        link = principal.department_links[0]
        try:
            identity = await self.identity_map.resolve_by_email(principal.email, link.dept_id)
        except NotFound:
            logger.warning(
                f"No identity mapping yet for '{principal.email}' in '{link.schema_prefix}'"
            )
            return None

        async with self.registry.department(identity.schema_prefix) as dept:
            profile = await dept.get_profile(identity.local_user_id)
        if profile is None:
            return None
        return ProfileRead(source=ProfileSource.Department, **profile.model_dump())
