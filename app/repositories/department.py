# app/repositories/department.py

from datetime import date, datetime
from typing import Any

from sqlmodel import select
from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.academic import (
    Module,
    Enrollment,
    EnrollmentRequest,
    ExternalModuleRequest,
    ExternalEnrollment,
)
from app.models.enums import RequestStatus
from app.models.outbox import OutboxEvent
from app.models.student import DepartmentUserProfile, Student

# Requests that still block a duplicate
OPEN_STATUSES = (RequestStatus.Pending.value, RequestStatus.Approving.value)


class DepartmentRepository:
    """
    Reads and writes against one department schema. Table names are
    unqualified; the session's search_path picks the department.
    """

    def __init__(self, session: AsyncSession, schema_prefix: str):
        self.session = session
        self.schema_prefix = schema_prefix

    # ============================================================================
    # MODULES
    # ============================================================================
    async def list_active_modules(self, student_id: int) -> list[dict[str, Any]]:
        is_enrolled = (
            select(Enrollment.enrollment_id)
            .where(
                Enrollment.student_id == student_id,
                Enrollment.module_id == Module.module_id,
                Enrollment.module_dept_id.is_(None),
            )
            .exists()
        )
        is_pending = (
            select(EnrollmentRequest.request_id)
            .where(
                EnrollmentRequest.student_id == student_id,
                EnrollmentRequest.module_id == Module.module_id,
                EnrollmentRequest.status == RequestStatus.Pending.value,
            )
            .exists()
        )
        result = await self.session.execute(
            select(
                Module.module_id,
                Module.code,
                Module.title,
                Module.credits,
                Module.semester_id,
                is_enrolled.label("is_enrolled"),
                is_pending.label("is_pending"),
            )
            .where(Module.is_active == True)  # noqa: E712
            .order_by(Module.code)
        )
        return [dict(row) for row in result.mappings().all()]

    async def get_module(self, module_id: int) -> Module | None:
        result = await self.session.execute(select(Module).where(Module.module_id == module_id))
        return result.scalar_one_or_none()

    async def get_active_module(self, module_id: int) -> Module | None:
        result = await self.session.execute(
            select(Module).where(Module.module_id == module_id, Module.is_active == True)  # noqa: E712
        )
        return result.scalar_one_or_none()

    # ============================================================================
    # ENROLLMENTS
    # ============================================================================
    async def find_enrollments_by_module_id(self, student_id: int, module_id: int) -> list[Enrollment]:
        """Any enrollment carrying this raw module id, whichever department owns it."""
        result = await self.session.execute(
            select(Enrollment).where(
                Enrollment.student_id == student_id,
                Enrollment.module_id == module_id,
            )
        )
        return list(result.scalars().all())

    async def is_enrolled(self, student_id: int, module_id: int, module_dept_id: int | None = None) -> bool:
        query = select(Enrollment.enrollment_id).where(
            Enrollment.student_id == student_id,
            Enrollment.module_id == module_id,
        )
        if module_dept_id is None:
            query = query.where(Enrollment.module_dept_id.is_(None))
        else:
            query = query.where(Enrollment.module_dept_id == module_dept_id)
        result = await self.session.execute(query.limit(1))
        return result.first() is not None

    async def enrolled_external_modules(self, student_id: int) -> set[tuple[int, int]]:
        result = await self.session.execute(
            select(Enrollment.module_dept_id, Enrollment.module_id).where(
                Enrollment.student_id == student_id,
                Enrollment.module_dept_id.is_not(None),
            )
        )
        return {(row[0], row[1]) for row in result.all()}

    async def add_enrollment(self, student_id: int, module_id: int, module_dept_id: int | None = None) -> bool:
        if await self.is_enrolled(student_id, module_id, module_dept_id):
            return False
        self.session.add(
            Enrollment(student_id=student_id, module_id=module_id, module_dept_id=module_dept_id)
        )
        await self.session.flush()
        return True

    async def add_external_enrollment(
        self, student_id: int, source_dept_id: int, module_id: int, university_email: str | None
    ) -> bool:
        result = await self.session.execute(
            pg_insert(ExternalEnrollment)
            .values(
                student_id=student_id,
                source_dept_id=source_dept_id,
                module_id=module_id,
                university_email=university_email,
                status="registered",
                created_at=datetime.utcnow(),
            )
            .on_conflict_do_nothing()
        )
        return result.rowcount == 1

    # ============================================================================
    # SAME-DEPARTMENT REQUESTS
    # ============================================================================
    async def has_pending_request(self, student_id: int, module_id: int) -> bool:
        result = await self.session.execute(
            select(EnrollmentRequest.request_id).where(
                EnrollmentRequest.student_id == student_id,
                EnrollmentRequest.module_id == module_id,
                EnrollmentRequest.status == RequestStatus.Pending.value,
            ).limit(1)
        )
        return result.first() is not None

    async def add_enrollment_request(self, student_id: int, module_id: int, reason: str | None) -> EnrollmentRequest:
        request = EnrollmentRequest(student_id=student_id, module_id=module_id, reason=reason)
        self.session.add(request)
        await self.session.flush()
        return request

    async def get_enrollment_request(self, request_id: int) -> EnrollmentRequest | None:
        result = await self.session.execute(
            select(EnrollmentRequest).where(EnrollmentRequest.request_id == request_id)
        )
        return result.scalar_one_or_none()

    async def list_enrollment_requests(self, student_id: int | None = None) -> list[dict[str, Any]]:
        query = (
            select(
                EnrollmentRequest.request_id,
                EnrollmentRequest.student_id,
                EnrollmentRequest.module_id,
                EnrollmentRequest.reason,
                EnrollmentRequest.request_date,
                EnrollmentRequest.status,
                EnrollmentRequest.review_date,
                EnrollmentRequest.reviewer_notes,
                Module.code.label("module_code"),
                Module.title.label("module_title"),
                Student.university_email.label("student_email"),
            )
            .outerjoin(Module, Module.module_id == EnrollmentRequest.module_id)
            .outerjoin(Student, Student.user_id == EnrollmentRequest.student_id)
        )
        if student_id is not None:
            query = query.where(EnrollmentRequest.student_id == student_id)
        result = await self.session.execute(query.order_by(EnrollmentRequest.request_date.desc()))
        return [dict(row) for row in result.mappings().all()]

    async def set_enrollment_request_status(
        self, request_id: int, status: str, notes: str | None, expected_status: str
    ) -> bool:
        """Compare-and-set; False when another reviewer got there first."""
        result = await self.session.execute(
            update(EnrollmentRequest)
            .where(
                EnrollmentRequest.request_id == request_id,
                EnrollmentRequest.status == expected_status,
            )
            .values(status=status, reviewer_notes=notes, review_date=datetime.utcnow())
        )
        return result.rowcount == 1

    # ============================================================================
    # CROSS-DEPARTMENT REQUESTS (rows owned by the student's home schema)
    # ============================================================================
    async def open_external_targets(self, student_id: int) -> set[tuple[int, int]]:
        result = await self.session.execute(
            select(ExternalModuleRequest.target_dept_id, ExternalModuleRequest.target_module_id).where(
                ExternalModuleRequest.student_id == student_id,
                ExternalModuleRequest.status.in_(OPEN_STATUSES),
            )
        )
        return {(row[0], row[1]) for row in result.all()}

    async def has_open_external_request(self, student_id: int, module_id: int, dept_id: int) -> bool:
        return (dept_id, module_id) in await self.open_external_targets(student_id)

    async def add_external_request(
        self, student_id: int, module_id: int, dept_id: int, reason: str | None
    ) -> ExternalModuleRequest:
        request = ExternalModuleRequest(
            student_id=student_id,
            target_module_id=module_id,
            target_dept_id=dept_id,
            reason=reason,
        )
        self.session.add(request)
        await self.session.flush()
        return request

    async def get_external_request(self, request_id: int) -> ExternalModuleRequest | None:
        result = await self.session.execute(
            select(ExternalModuleRequest).where(ExternalModuleRequest.request_id == request_id)
        )
        return result.scalar_one_or_none()

    async def list_external_requests(self, student_id: int) -> list[ExternalModuleRequest]:
        result = await self.session.execute(
            select(ExternalModuleRequest)
            .where(ExternalModuleRequest.student_id == student_id)
            .order_by(ExternalModuleRequest.request_date.desc())
        )
        return list(result.scalars().all())

    async def set_external_request_status(
        self, request_id: int, status: str, notes: str | None, expected_status: str
    ) -> bool:
        values: dict[str, Any] = {"status": status, "response_date": datetime.utcnow()}
        if notes is not None:
            values["response_notes"] = notes
        result = await self.session.execute(
            update(ExternalModuleRequest)
            .where(
                ExternalModuleRequest.request_id == request_id,
                ExternalModuleRequest.status == expected_status,
            )
            .values(**values)
        )
        return result.rowcount == 1

    # ============================================================================
    # PEOPLE
    # ============================================================================
    async def get_profile(self, user_id: int) -> DepartmentUserProfile | None:
        result = await self.session.execute(
            select(DepartmentUserProfile).where(DepartmentUserProfile.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_student(self, user_id: int) -> Student | None:
        result = await self.session.execute(select(Student).where(Student.user_id == user_id))
        return result.scalar_one_or_none()

    async def student_exists(self, university_email: str, student_number: str) -> bool:
        result = await self.session.execute(
            select(Student.user_id).where(
                (Student.university_email == university_email) | (Student.student_number == student_number)
            ).limit(1)
        )
        return result.first() is not None

    async def create_student(
        self,
        *,
        first_name: str,
        last_name: str,
        student_number: str,
        university_email: str,
        personal_email: str | None = None,
        phone: str | None = None,
        gender: str | None = None,
        date_of_birth: date | None = None,
        year_of_study: int = 1,
    ) -> Student:
        profile = DepartmentUserProfile(
            first_name=first_name,
            last_name=last_name,
            personal_email=personal_email,
            phone=phone,
            gender=gender,
            date_of_birth=date_of_birth,
        )
        self.session.add(profile)
        await self.session.flush()

        student = Student(
            user_id=profile.user_id,
            student_number=student_number,
            university_email=university_email,
            year_of_study=year_of_study,
        )
        self.session.add(student)
        await self.session.flush()
        return student

    async def append_outbox(self, event_type: str, payload: dict[str, Any]) -> OutboxEvent:
        event = OutboxEvent(event_type=event_type, payload=payload)
        self.session.add(event)
        await self.session.flush()
        return event
