from datetime import date
from typing import List, Optional

from app.models.enums import ProfileSource
from app.schemas.common import CamelModel


# -------------------------------------------------------------------
# AUTHENTICATED CALLER (from the bearer token)
# -------------------------------------------------------------------
class Principal(CamelModel):
    user_id: int
    email: str


# -------------------------------------------------------------------
# DEPARTMENT-LOCAL IDENTITY (one user_id_map row)
# -------------------------------------------------------------------
class LocalIdentity(CamelModel):
    email: str
    dept_id: int
    schema_prefix: str
    local_user_id: int
    department_name: Optional[str] = None


# -------------------------------------------------------------------
# ROLES & LINKS
# -------------------------------------------------------------------
class RoleRead(CamelModel):
    role_id: Optional[int] = None
    name: str
    scope: str


class DepartmentLink(CamelModel):
    dept_id: int
    schema_prefix: str
    department_name: str
    role_id: int
    role_name: Optional[str] = None


class ResolvedPrincipal(CamelModel):
    user_id: int
    email: str
    status: Optional[str] = None
    roles: List[RoleRead] = []
    department_links: List[DepartmentLink] = []

    def role_names(self) -> set[str]:
        return {r.name for r in self.roles}


# -------------------------------------------------------------------
# PROFILE (central or department sourced, never merged)
# -------------------------------------------------------------------
class ProfileRead(CamelModel):
    source: ProfileSource
    user_id: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    date_of_birth: Optional[date] = None
    office: Optional[str] = None
    personal_email: Optional[str] = None

    @property
    def display_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)


class ProfileResponse(CamelModel):
    user_id: int
    email: str
    roles: List[RoleRead]
    department_links: List[DepartmentLink]
    profile: Optional[ProfileRead] = None
