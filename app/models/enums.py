from enum import Enum

class UserStatus(str, Enum):
    Active = "active"
    Suspended = "suspended"
    Inactive = "inactive"

class RoleScope(str, Enum):
    Central = "central"
    Department = "department"

# Role names as stored in central.roles
ROLE_ADMIN = "admin"
ROLE_CENTRAL_ADMIN = "central_admin"
ROLE_DEPARTMENT_ADMIN = "department_admin"
ROLE_STUDENT = "student"
ROLE_STAFF = "staff"

class RequestStatus(str, Enum):
    Pending = "pending"
    # External approval recorded on the request but not yet applied to the enrollment table
    Approving = "approving"
    Approved = "approve"
    Rejected = "reject"

class ReviewAction(str, Enum):
    Approve = "approve"
    Reject = "reject"

class RequestType(str, Enum):
    Internal = "internal"
    External = "external"

class ReportKind(str, Enum):
    StudentDirectory = "student_directory"
    ModuleEnrollments = "module_enrollments"
    GradesOverview = "grades_overview"
    StaffDirectory = "staff_directory"
    ExamSchedule = "exam_schedule"

class ProfileSource(str, Enum):
    Central = "central"
    Department = "department"
