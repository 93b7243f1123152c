# app/repositories/central.py

from datetime import datetime
from typing import Any

from sqlmodel import select
from sqlalchemy import func, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.department import Department
from app.models.enums import ReportKind
from app.models.identity import UserIdMap
from app.models.user import (
    GlobalUser,
    Role,
    UserRoleLink,
    UserDepartment,
    CentralUserProfile,
)

# Views that union per-department tables; only these names are ever read
REPORT_VIEWS = {
    ReportKind.StudentDirectory: "central.student_directory",
    ReportKind.ModuleEnrollments: "central.module_enrollments",
    ReportKind.GradesOverview: "central.grades_overview",
    ReportKind.StaffDirectory: "central.staff_directory",
    ReportKind.ExamSchedule: "central.exam_schedule",
}

GLOBAL_MODULE_COLUMNS = """
    gm.module_id, gm.title, gm.code, gm.credits, gm.semester_id,
    gm.dept_id, gm.department_code, gm.department_name, gm.global_module_id
"""

EXTERNAL_REQUEST_COLUMNS = """
    xr.request_id, xr.source_dept_id, xr.student_id, xr.target_module_id,
    xr.target_dept_id, xr.reason, xr.request_date, xr.status,
    xr.response_date, xr.response_notes
"""


class CentralRepository:
    """Every read and write against the central database."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def ping(self) -> None:
        await self.session.execute(text("SELECT 1"))

    # ============================================================================
    # USERS
    # ============================================================================
    async def get_user(self, user_id: int) -> GlobalUser | None:
        result = await self.session.execute(select(GlobalUser).where(GlobalUser.user_id == user_id))
        return result.scalar_one_or_none()

    async def get_user_by_email(self, email: str) -> GlobalUser | None:
        result = await self.session.execute(
            select(GlobalUser).where(func.lower(GlobalUser.email) == email.strip().lower())
        )
        return result.scalar_one_or_none()

    async def create_user(self, email: str, password_hash: str) -> GlobalUser:
        user = GlobalUser(email=email, password_hash=password_hash)
        self.session.add(user)
        await self.session.flush()
        return user

    async def set_password_hash(self, user_id: int, password_hash: str) -> None:
        await self.session.execute(
            update(GlobalUser)
            .where(GlobalUser.user_id == user_id)
            .values(password_hash=password_hash)
        )

    async def get_central_profile(self, user_id: int) -> CentralUserProfile | None:
        result = await self.session.execute(
            select(CentralUserProfile).where(CentralUserProfile.user_id == user_id)
        )
        return result.scalar_one_or_none()

    # ============================================================================
    # ROLES & DEPARTMENT LINKS
    # ============================================================================
    async def get_role_by_name(self, name: str) -> Role | None:
        result = await self.session.execute(select(Role).where(Role.name == name))
        return result.scalar_one_or_none()

    async def list_roles(self, user_id: int) -> list[dict[str, Any]]:
        result = await self.session.execute(
            select(Role.role_id, Role.name, Role.scope)
            .join(UserRoleLink, UserRoleLink.role_id == Role.role_id)
            .where(UserRoleLink.user_id == user_id)
            .order_by(Role.role_id)
        )
        return [dict(row) for row in result.mappings().all()]

    async def list_department_links(self, user_id: int) -> list[dict[str, Any]]:
        result = await self.session.execute(
            select(
                UserDepartment.dept_id,
                Department.schema_prefix,
                Department.name.label("department_name"),
                UserDepartment.role_id,
                Role.name.label("role_name"),
            )
            .join(Department, Department.dept_id == UserDepartment.dept_id)
            .join(Role, Role.role_id == UserDepartment.role_id)
            .where(UserDepartment.user_id == user_id)
            .order_by(UserDepartment.dept_id)
        )
        return [dict(row) for row in result.mappings().all()]

    async def add_user_role(self, user_id: int, role_id: int) -> bool:
        result = await self.session.execute(
            pg_insert(UserRoleLink)
            .values(user_id=user_id, role_id=role_id, assigned_at=datetime.utcnow())
            .on_conflict_do_nothing()
        )
        return result.rowcount == 1

    async def add_department_link(self, user_id: int, dept_id: int, role_id: int) -> bool:
        result = await self.session.execute(
            pg_insert(UserDepartment)
            .values(user_id=user_id, dept_id=dept_id, role_id=role_id, assigned_at=datetime.utcnow())
            .on_conflict_do_nothing()
        )
        return result.rowcount == 1

    # ============================================================================
    # DEPARTMENTS
    # ============================================================================
    async def list_departments(self) -> list[Department]:
        result = await self.session.execute(select(Department).order_by(Department.dept_id))
        return list(result.scalars().all())

    async def get_department(self, dept_id: int) -> Department | None:
        result = await self.session.execute(select(Department).where(Department.dept_id == dept_id))
        return result.scalar_one_or_none()

    async def get_department_by_name(self, name: str) -> Department | None:
        result = await self.session.execute(select(Department).where(Department.name == name))
        return result.scalar_one_or_none()

    # ============================================================================
    # IDENTITY MAP
    # ============================================================================
    def _identity_query(self):
        return (
            select(
                UserIdMap.university_email.label("email"),
                UserIdMap.dept_id,
                UserIdMap.local_user_id,
                Department.schema_prefix,
                Department.name.label("department_name"),
            )
            .join(Department, Department.dept_id == UserIdMap.dept_id)
        )

    async def find_identities(self, email: str, dept_id: int | None = None) -> list[dict[str, Any]]:
        query = self._identity_query().where(
            func.lower(UserIdMap.university_email) == email.strip().lower()
        )
        if dept_id is not None:
            query = query.where(UserIdMap.dept_id == dept_id)
        result = await self.session.execute(query.order_by(UserIdMap.dept_id))
        return [dict(row) for row in result.mappings().all()]

    async def find_identity_by_local_id(self, local_user_id: int, dept_id: int) -> dict[str, Any] | None:
        result = await self.session.execute(
            self._identity_query().where(
                (UserIdMap.local_user_id == local_user_id) & (UserIdMap.dept_id == dept_id)
            )
        )
        row = result.mappings().one_or_none()
        return dict(row) if row else None

    async def add_identity(self, email: str, dept_id: int, local_user_id: int) -> bool:
        # Both unique indexes make a concurrent duplicate a no-op
        result = await self.session.execute(
            pg_insert(UserIdMap)
            .values(university_email=email.strip().lower(), dept_id=dept_id, local_user_id=local_user_id)
            .on_conflict_do_nothing()
        )
        return result.rowcount == 1

    # ============================================================================
    # CENTRAL VIEWS (backed by department databases)
    # ============================================================================
    async def list_pending_users(self) -> list[dict[str, Any]]:
        result = await self.session.execute(text("SELECT * FROM central.vw_pending_users"))
        return [dict(row) for row in result.mappings().all()]

    async def list_global_modules(self, exclude_dept_id: int) -> list[dict[str, Any]]:
        result = await self.session.execute(
            text(f"""
                SELECT {GLOBAL_MODULE_COLUMNS}
                FROM central.global_modules gm
                WHERE gm.dept_id != :dept_id
                ORDER BY gm.code ASC
            """),
            {"dept_id": exclude_dept_id},
        )
        return [dict(row) for row in result.mappings().all()]

    async def get_global_module(self, module_id: int, dept_id: int) -> dict[str, Any] | None:
        result = await self.session.execute(
            text(f"""
                SELECT {GLOBAL_MODULE_COLUMNS}
                FROM central.global_modules gm
                WHERE gm.module_id = :module_id AND gm.dept_id = :dept_id
            """),
            {"module_id": module_id, "dept_id": dept_id},
        )
        row = result.mappings().first()
        return dict(row) if row else None

    async def list_external_requests(
        self, target_dept_id: int | None = None, status: str | None = None
    ) -> list[dict[str, Any]]:
        clauses = []
        params: dict[str, Any] = {}
        if target_dept_id is not None:
            clauses.append("xr.target_dept_id = :target_dept_id")
            params["target_dept_id"] = target_dept_id
        if status is not None:
            clauses.append("xr.status = :status")
            params["status"] = status
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        result = await self.session.execute(
            text(f"""
                SELECT {EXTERNAL_REQUEST_COLUMNS}
                FROM central.external_module_requests xr
                {where}
                ORDER BY xr.request_date DESC
            """),
            params,
        )
        return [dict(row) for row in result.mappings().all()]

    async def get_external_request(self, source_dept_id: int, request_id: int) -> dict[str, Any] | None:
        result = await self.session.execute(
            text(f"""
                SELECT {EXTERNAL_REQUEST_COLUMNS}
                FROM central.external_module_requests xr
                WHERE xr.source_dept_id = :source_dept_id AND xr.request_id = :request_id
            """),
            {"source_dept_id": source_dept_id, "request_id": request_id},
        )
        row = result.mappings().first()
        return dict(row) if row else None

    async def fetch_report(self, kind: ReportKind) -> list[dict[str, Any]]:
        view = REPORT_VIEWS[kind]
        result = await self.session.execute(text(f"SELECT * FROM {view}"))
        return [dict(row) for row in result.mappings().all()]
