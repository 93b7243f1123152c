from datetime import datetime
from typing import Optional

from pydantic import Field

from app.models.enums import RequestType, ReviewAction
from app.schemas.common import CamelModel


# ------------------------------------------------------------
# AVAILABLE MODULES (local + other departments' global modules)
# ------------------------------------------------------------
class ModuleOption(CamelModel):
    global_module_id: str
    module_id: int
    dept_id: int
    department_name: Optional[str] = None
    code: str
    title: str
    credits: Optional[int] = None
    semester_id: Optional[int] = None
    is_global: bool = False
    is_enrolled: bool = False
    is_pending: bool = False


# ------------------------------------------------------------
# STUDENT REQUEST
# ------------------------------------------------------------
class EnrollmentRequestCreate(CamelModel):
    module_id: int
    department_id: Optional[int] = None
    is_global: bool = False
    reason: Optional[str] = Field(default=None, max_length=2000)


class EnrollmentRequestCreated(CamelModel):
    request_id: int
    type: RequestType
    status: str
    message: str


class EnrollmentRequestRead(CamelModel):
    request_id: int
    type: RequestType
    student_id: int
    student_email: Optional[str] = None
    module_id: int
    module_code: Optional[str] = None
    module_title: Optional[str] = None
    # Department owning the module
    department_id: Optional[int] = None
    department_name: Optional[str] = None
    # Department holding the request row (the student's home)
    source_department_id: Optional[int] = None
    reason: Optional[str] = None
    status: str
    request_date: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    notes: Optional[str] = None


# ------------------------------------------------------------
# DEPARTMENT REVIEW
# ------------------------------------------------------------
class ReviewRequest(CamelModel):
    type: RequestType = RequestType.Internal
    action: ReviewAction
    notes: Optional[str] = Field(default=None, max_length=2000)
    # Required for external requests: request ids are only unique per department
    source_department_id: Optional[int] = None
    # Which administered department is reviewing, when the admin has several
    department_id: Optional[int] = None


class ReviewResult(CamelModel):
    request_id: int
    type: RequestType
    status: str


class ReconcileReport(CamelModel):
    seen: int = 0
    applied: int = 0
    failed: int = 0
