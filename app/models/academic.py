from sqlmodel import SQLModel, Field, Column
from sqlalchemy import Integer, String, Text, Boolean, DateTime, Index, text
from datetime import datetime
from typing import Optional

from app.models.enums import RequestStatus

# ------------------------------------------------------------
# 1. MODULE (ids are only unique inside one department)
# ------------------------------------------------------------
class Module(SQLModel, table=True):
    __tablename__ = "modules"

    module_id: Optional[int] = Field(
        default=None,
        sa_column=Column(Integer, primary_key=True, autoincrement=True)
    )
    code: str = Field(sa_column=Column(String, nullable=False))
    title: str = Field(sa_column=Column(String, nullable=False))
    credits: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    semester_id: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True))
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    # Exposed to other departments through central.global_modules
    is_global: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))

# ------------------------------------------------------------
# 2. ENROLLMENT
# ------------------------------------------------------------
class Enrollment(SQLModel, table=True):
    __tablename__ = "enrollments"
    # One row per (student, module, owning department); NULL owner means the home department
    __table_args__ = (
        Index(
            "uq_enrollments_student_module",
            "student_id",
            "module_id",
            text("coalesce(module_dept_id, 0)"),
            unique=True,
        ),
    )

    enrollment_id: Optional[int] = Field(
        default=None,
        sa_column=Column(Integer, primary_key=True, autoincrement=True)
    )
    student_id: int = Field(sa_column=Column(Integer, nullable=False, index=True))
    # Raw id; for external modules module_dept_id names the owning department
    module_id: int = Field(sa_column=Column(Integer, nullable=False))
    module_dept_id: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True))
    status: str = Field(default="registered", sa_column=Column(String, nullable=False, default="registered"))
    request_date: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )

# ------------------------------------------------------------
# 3. SAME-DEPARTMENT REQUEST
# ------------------------------------------------------------
class EnrollmentRequest(SQLModel, table=True):
    __tablename__ = "enrollment_requests"
    # At most one pending request per (student, module)
    __table_args__ = (
        Index(
            "uq_enrollment_requests_pending",
            "student_id",
            "module_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
        ),
    )

    request_id: Optional[int] = Field(
        default=None,
        sa_column=Column(Integer, primary_key=True, autoincrement=True)
    )
    student_id: int = Field(sa_column=Column(Integer, nullable=False, index=True))
    module_id: int = Field(sa_column=Column(Integer, nullable=False))
    reason: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    request_date: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    status: str = Field(
        default=RequestStatus.Pending.value,
        sa_column=Column(String, nullable=False, default=RequestStatus.Pending.value)
    )
    review_date: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    reviewer_notes: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))

# ------------------------------------------------------------
# 4. CROSS-DEPARTMENT REQUEST (stored in the student's home schema)
# ------------------------------------------------------------
class ExternalModuleRequest(SQLModel, table=True):
    __tablename__ = "external_module_requests"
    # At most one open request per (student, module, owning department)
    __table_args__ = (
        Index(
            "uq_external_module_requests_open",
            "student_id",
            "target_module_id",
            "target_dept_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'approving')"),
        ),
    )

    request_id: Optional[int] = Field(
        default=None,
        sa_column=Column(Integer, primary_key=True, autoincrement=True)
    )
    student_id: int = Field(sa_column=Column(Integer, nullable=False, index=True))
    # No foreign key: the module lives in another department's database
    target_module_id: int = Field(sa_column=Column(Integer, nullable=False))
    target_dept_id: int = Field(sa_column=Column(Integer, nullable=False))
    reason: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    request_date: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    status: str = Field(
        default=RequestStatus.Pending.value,
        sa_column=Column(String, nullable=False, default=RequestStatus.Pending.value)
    )
    response_date: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    response_notes: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))

# ------------------------------------------------------------
# 5. ROSTER OF OUTSIDE STUDENTS (stored in the module's owning schema)
# ------------------------------------------------------------
class ExternalEnrollment(SQLModel, table=True):
    __tablename__ = "external_enrollments"

    student_id: int = Field(sa_column=Column(Integer, primary_key=True))
    source_dept_id: int = Field(sa_column=Column(Integer, primary_key=True))
    module_id: int = Field(sa_column=Column(Integer, primary_key=True))
    university_email: Optional[str] = Field(default=None, sa_column=Column(String, nullable=True))
    status: str = Field(default="registered", sa_column=Column(String, nullable=False, default="registered"))
    created_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
