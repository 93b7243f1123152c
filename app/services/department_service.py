# app/services/department_service.py

from typing import Optional

from loguru import logger
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import Conflict
from app.models.enums import ROLE_STUDENT
from app.schemas.department import StudentCreate, StudentCreated
from app.schemas.identity import Principal
from app.services.role_service import RoleScopeResolver

STUDENT_CREATED_EVENT = "student_created"


async def add_student(
    registry, principal: Principal, payload: StudentCreate, department_id: Optional[int] = None
) -> StudentCreated:
    """
    Profile row, student row and outbox event in one department transaction.
    The central directory picks the student up on the next sync cycle.
    """
    resolver = RoleScopeResolver(registry)
    admin = await resolver.resolve(principal.user_id)
    department = resolver.administered_department(admin, department_id or payload.department_id)

    email = payload.university_email.strip().lower()

    try:
        async with registry.department(department.schema_prefix, transactional=True) as dept:
            if await dept.student_exists(email, payload.student_number):
                raise Conflict("A student with this email or student number already exists")

            student = await dept.create_student(
                first_name=payload.first_name,
                last_name=payload.last_name,
                student_number=payload.student_number,
                university_email=email,
                personal_email=payload.personal_email,
                phone=payload.phone,
                gender=payload.gender,
                date_of_birth=payload.date_of_birth,
                year_of_study=payload.year_of_study,
            )

            await dept.append_outbox(
                STUDENT_CREATED_EVENT,
                {
                    "local_user_id": student.user_id,
                    "email": email,
                    "first_name": payload.first_name,
                    "last_name": payload.last_name,
                    "date_of_birth": payload.date_of_birth.isoformat() if payload.date_of_birth else None,
                    "role": ROLE_STUDENT,
                    "department": department.department_name,
                },
            )
    except IntegrityError:
        raise Conflict("A student with this email or student number already exists")

    logger.info(
        f"Student '{email}' (local id {student.user_id}) added to '{department.schema_prefix}'"
    )
    return StudentCreated(
        user_id=student.user_id,
        student_number=student.student_number,
        university_email=email,
        department_id=department.dept_id,
        department_name=department.department_name,
    )
