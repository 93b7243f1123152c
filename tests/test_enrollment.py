import pytest
from sqlalchemy.exc import SQLAlchemyError

from app.core.exceptions import (
    Conflict,
    Forbidden,
    NotFound,
    ServiceUnavailable,
    ValidationFailed,
)
from app.models.enums import RequestStatus, RequestType, ReviewAction
from app.schemas.enrollment import EnrollmentRequestCreate, ReviewRequest
from app.schemas.identity import Principal
from app.services.enrollment_service import EnrollmentResolver

from conftest import CS, MATH
from fakes import FakeCentralRepository, FakeDepartmentRepository


def principal_of(user):
    return Principal(user_id=user.user_id, email=user.email)


def by_code(modules):
    return {m.code: m for m in modules}


async def request_math_module(university, module_id=3):
    resolver = EnrollmentResolver(university.registry)
    return await resolver.request_enrollment(
        principal_of(university.student),
        EnrollmentRequestCreate(module_id=module_id, department_id=MATH, is_global=True, reason="minor"),
    )


# ============================================================================
# LISTING
# ============================================================================
@pytest.mark.asyncio
async def test_student_sees_home_modules_and_other_departments_global_modules(university):
    resolver = EnrollmentResolver(university.registry)
    student = principal_of(university.student)

    modules = await resolver.list_available(student)
    listed = by_code(modules)

    # home: active only, including home's own global module
    assert {m.code for m in modules if not m.is_global} == {"CS101", "CS107", "CS204"}
    # other departments: only their global modules; never the home department's
    assert {m.code for m in modules if m.is_global} == {"MA103", "MA107"}
    assert all(not m.is_enrolled and not m.is_pending for m in modules)

    assert listed["CS107"].global_module_id == f"7-{CS}"
    assert listed["MA107"].global_module_id == f"7-{MATH}"
    assert len({m.global_module_id for m in modules}) == len(modules)

    # then requesting a Maths module marks it pending
    await request_math_module(university)
    listed = by_code(await resolver.list_available(student))
    assert listed["MA103"].is_pending is True
    assert listed["MA107"].is_pending is False


@pytest.mark.asyncio
async def test_listing_survives_failed_pending_lookup(university, monkeypatch):
    await request_math_module(university)

    async def broken(self, student_id):
        raise SQLAlchemyError("relation does not exist")

    monkeypatch.setattr(FakeDepartmentRepository, "open_external_targets", broken)

    listed = by_code(await EnrollmentResolver(university.registry).list_available(principal_of(university.student)))
    assert listed["MA103"].is_pending is False


@pytest.mark.asyncio
async def test_listing_flags_enrollments_per_department(university):
    # Local id 42 exists in both departments; only the Maths student is enrolled
    university.registry.enroll("math_schema", 42, 5)

    cs_listing = by_code(await EnrollmentResolver(university.registry).list_available(principal_of(university.student)))
    math_listing = by_code(
        await EnrollmentResolver(university.registry).list_available(principal_of(university.math_student))
    )

    assert "MA205" not in cs_listing
    assert math_listing["MA205"].is_enrolled is True
    assert {m.code for m in math_listing.values() if m.is_global} == {"CS204"}


# ============================================================================
# SAME-DEPARTMENT REQUESTS
# ============================================================================
@pytest.mark.asyncio
async def test_only_one_pending_request_per_module(university):
    resolver = EnrollmentResolver(university.registry)
    student = principal_of(university.student)

    created = await resolver.request_enrollment(student, EnrollmentRequestCreate(module_id=1))
    assert created.type == RequestType.Internal
    assert created.status == RequestStatus.Pending.value

    with pytest.raises(Conflict):
        await resolver.request_enrollment(student, EnrollmentRequestCreate(module_id=1))

    pending = [r for r in university.registry.department_data["cs_schema"].requests.values() if r.module_id == 1]
    assert len(pending) == 1
    assert by_code(await resolver.list_available(student))["CS101"].is_pending is True


@pytest.mark.asyncio
async def test_already_enrolled_is_a_conflict(university):
    university.registry.enroll("cs_schema", 42, 1)
    with pytest.raises(Conflict):
        await EnrollmentResolver(university.registry).request_enrollment(
            principal_of(university.student), EnrollmentRequestCreate(module_id=1)
        )


@pytest.mark.asyncio
@pytest.mark.parametrize("module_id", [9, 404])
async def test_inactive_or_missing_module_is_not_found(university, module_id):
    with pytest.raises(NotFound):
        await EnrollmentResolver(university.registry).request_enrollment(
            principal_of(university.student), EnrollmentRequestCreate(module_id=module_id)
        )


@pytest.mark.asyncio
async def test_global_flag_with_home_department_uses_local_path(university):
    created = await EnrollmentResolver(university.registry).request_enrollment(
        principal_of(university.student),
        EnrollmentRequestCreate(module_id=4, department_id=CS, is_global=True),
    )
    assert created.type == RequestType.Internal
    assert university.registry.department_data["cs_schema"].external_requests == {}


@pytest.mark.asyncio
async def test_global_request_requires_department(university):
    with pytest.raises(ValidationFailed):
        await EnrollmentResolver(university.registry).request_enrollment(
            principal_of(university.student), EnrollmentRequestCreate(module_id=3, is_global=True)
        )


@pytest.mark.asyncio
async def test_student_without_identity_mapping_is_not_found(university):
    stranger = university.registry.add_student("cs_schema", "new@uni.ac", local_user_id=50, map_identity=False)
    with pytest.raises(NotFound):
        await EnrollmentResolver(university.registry).list_available(principal_of(stranger))


# ============================================================================
# CROSS-DEPARTMENT REQUESTS
# ============================================================================
@pytest.mark.asyncio
async def test_external_request_is_stored_in_home_schema(university):
    created = await request_math_module(university)

    assert created.type == RequestType.External
    home = university.registry.department_data["cs_schema"].external_requests
    target = university.registry.department_data["math_schema"].external_requests
    assert list(home) == [created.request_id]
    assert target == {}
    row = home[created.request_id]
    assert (row.student_id, row.target_module_id, row.target_dept_id) == (42, 3, MATH)


@pytest.mark.asyncio
async def test_duplicate_external_request_is_a_conflict(university):
    await request_math_module(university)
    with pytest.raises(Conflict):
        await request_math_module(university)


@pytest.mark.asyncio
async def test_racing_external_requests_leave_one_open_row(university, monkeypatch):
    await request_math_module(university)

    # both requests passed the duplicate check before either inserted
    async def not_yet(self, student_id, module_id, dept_id):
        return False

    monkeypatch.setattr(FakeDepartmentRepository, "has_open_external_request", not_yet)

    with pytest.raises(Conflict) as info:
        await request_math_module(university)

    assert info.value.message == "A request for this module is already pending"
    assert len(university.registry.department_data["cs_schema"].external_requests) == 1


@pytest.mark.asyncio
async def test_racing_internal_requests_leave_one_pending_row(university, monkeypatch):
    resolver = EnrollmentResolver(university.registry)
    student = principal_of(university.student)
    await resolver.request_enrollment(student, EnrollmentRequestCreate(module_id=1))

    async def not_yet(self, student_id, module_id):
        return False

    monkeypatch.setattr(FakeDepartmentRepository, "has_pending_request", not_yet)

    with pytest.raises(Conflict):
        await resolver.request_enrollment(student, EnrollmentRequestCreate(module_id=1))

    assert len(university.registry.department_data["cs_schema"].requests) == 1


@pytest.mark.asyncio
async def test_enrolled_external_module_is_not_reported_as_a_collision(university):
    university.registry.enroll("cs_schema", 42, 3, module_dept_id=MATH)

    with pytest.raises(Conflict) as info:
        await request_math_module(university)

    assert info.value.message == "You are already enrolled in this module"
    assert university.registry.department_data["cs_schema"].external_requests == {}


@pytest.mark.asyncio
async def test_non_global_module_cannot_be_requested(university):
    with pytest.raises(NotFound):
        await request_math_module(university, module_id=5)


@pytest.mark.asyncio
async def test_module_id_collision_is_rejected_naming_both_modules(university):
    # enrolled in CS107 (id 7); MA107 in Mathematics also has id 7
    university.registry.enroll("cs_schema", 42, 7)

    with pytest.raises(Conflict) as info:
        await request_math_module(university, module_id=7)

    assert "CS107" in info.value.message
    assert "MA107" in info.value.message
    assert university.registry.department_data["cs_schema"].external_requests == {}


@pytest.mark.asyncio
async def test_request_history_is_enriched_and_newest_first(university):
    resolver = EnrollmentResolver(university.registry)
    student = principal_of(university.student)

    await resolver.request_enrollment(student, EnrollmentRequestCreate(module_id=1, reason="core"))
    await request_math_module(university)

    history = await resolver.list_requests(student)

    assert [r.type for r in history] == [RequestType.External, RequestType.Internal]
    external, internal = history
    assert (external.module_code, external.module_title) == ("MA103", "Calculus")
    assert external.department_name == "Mathematics"
    assert external.source_department_id == CS
    assert internal.module_code == "CS101"
    assert internal.reason == "core"


# ============================================================================
# REVIEW
# ============================================================================
@pytest.mark.asyncio
async def test_internal_approval_enrolls_the_student(university):
    resolver = EnrollmentResolver(university.registry)
    created = await resolver.request_enrollment(principal_of(university.student), EnrollmentRequestCreate(module_id=1))

    result = await resolver.review(
        principal_of(university.cs_admin),
        created.request_id,
        ReviewRequest(action=ReviewAction.Approve, notes="ok"),
    )

    assert result.status == RequestStatus.Approved.value
    cs = university.registry.department_data["cs_schema"]
    assert cs.requests[created.request_id].reviewer_notes == "ok"
    assert [(e.student_id, e.module_id, e.module_dept_id) for e in cs.enrollments] == [(42, 1, None)]

    with pytest.raises(Conflict):
        await resolver.review(
            principal_of(university.cs_admin), created.request_id, ReviewRequest(action=ReviewAction.Reject)
        )


@pytest.mark.asyncio
async def test_internal_rejection_does_not_enroll(university):
    resolver = EnrollmentResolver(university.registry)
    created = await resolver.request_enrollment(principal_of(university.student), EnrollmentRequestCreate(module_id=1))

    result = await resolver.review(
        principal_of(university.cs_admin), created.request_id, ReviewRequest(action=ReviewAction.Reject)
    )

    assert result.status == RequestStatus.Rejected.value
    assert university.registry.department_data["cs_schema"].enrollments == []


@pytest.mark.asyncio
async def test_students_cannot_review(university):
    with pytest.raises(Forbidden):
        await EnrollmentResolver(university.registry).review(
            principal_of(university.student), 1, ReviewRequest(action=ReviewAction.Approve)
        )


@pytest.mark.asyncio
async def test_department_inbox_shows_inbound_external_requests(university):
    created = await request_math_module(university)

    inbox = await EnrollmentResolver(university.registry).list_department_requests(
        principal_of(university.math_admin)
    )

    assert len(inbox) == 1
    item = inbox[0]
    assert item.type == RequestType.External
    assert item.request_id == created.request_id
    assert item.source_department_id == CS
    assert item.student_email == "s1@uni.ac"
    assert item.module_code == "MA103"

    # not visible to the home department's admin as an inbound request
    cs_inbox = await EnrollmentResolver(university.registry).list_department_requests(
        principal_of(university.cs_admin)
    )
    assert cs_inbox == []


@pytest.mark.asyncio
async def test_external_approval_writes_into_the_home_department(university):
    created = await request_math_module(university)
    resolver = EnrollmentResolver(university.registry)

    result = await resolver.review(
        principal_of(university.math_admin),
        created.request_id,
        ReviewRequest(type=RequestType.External, action=ReviewAction.Approve, source_department_id=CS),
    )

    assert result.status == RequestStatus.Approved.value
    cs = university.registry.department_data["cs_schema"]
    math = university.registry.department_data["math_schema"]
    assert cs.external_requests[created.request_id].status == RequestStatus.Approved.value
    assert [(e.student_id, e.module_id, e.module_dept_id) for e in cs.enrollments] == [(42, 3, MATH)]
    assert math.enrollments == []
    roster = math.external_enrollments[(42, CS, 3)]
    assert roster.university_email == "s1@uni.ac"

    listed = by_code(await resolver.list_available(principal_of(university.student)))
    assert listed["MA103"].is_enrolled is True
    # the home module with the same raw id is untouched
    assert listed["CS107"].is_enrolled is False


@pytest.mark.asyncio
async def test_external_rejection(university):
    created = await request_math_module(university)

    result = await EnrollmentResolver(university.registry).review(
        principal_of(university.math_admin),
        created.request_id,
        ReviewRequest(type=RequestType.External, action=ReviewAction.Reject, notes="full", source_department_id=CS),
    )

    assert result.status == RequestStatus.Rejected.value
    cs = university.registry.department_data["cs_schema"]
    assert cs.external_requests[created.request_id].response_notes == "full"
    assert cs.enrollments == []


@pytest.mark.asyncio
async def test_external_review_needs_source_department(university):
    created = await request_math_module(university)
    with pytest.raises(ValidationFailed):
        await EnrollmentResolver(university.registry).review(
            principal_of(university.math_admin),
            created.request_id,
            ReviewRequest(type=RequestType.External, action=ReviewAction.Approve),
        )


@pytest.mark.asyncio
async def test_only_the_owning_department_reviews_external_requests(university):
    created = await request_math_module(university)
    with pytest.raises(NotFound):
        await EnrollmentResolver(university.registry).review(
            principal_of(university.cs_admin),
            created.request_id,
            ReviewRequest(type=RequestType.External, action=ReviewAction.Approve, source_department_id=CS),
        )


# ============================================================================
# PARTIAL FAILURE + RECONCILIATION
# ============================================================================
@pytest.mark.asyncio
async def test_failed_cross_tenant_write_is_left_resumable(university):
    registry = university.registry
    created = await request_math_module(university)
    resolver = EnrollmentResolver(registry)

    # Maths answers the central view but its own pool is down
    registry.unavailable.add("math_schema")
    with pytest.raises(ServiceUnavailable) as info:
        await resolver.review(
            principal_of(university.math_admin),
            created.request_id,
            ReviewRequest(type=RequestType.External, action=ReviewAction.Approve, source_department_id=CS),
        )
    assert info.value.tenant == "math_schema"

    cs = registry.department_data["cs_schema"]
    assert cs.external_requests[created.request_id].status == RequestStatus.Approving.value
    assert cs.enrollments == []

    # still blocks a duplicate request while in flight
    registry.unavailable.clear()
    with pytest.raises(Conflict):
        await request_math_module(university)

    report = await resolver.reconcile()
    assert (report.seen, report.applied, report.failed) == (1, 1, 0)
    assert cs.external_requests[created.request_id].status == RequestStatus.Approved.value
    assert [(e.module_id, e.module_dept_id) for e in cs.enrollments] == [(3, MATH)]
    assert (42, CS, 3) in registry.department_data["math_schema"].external_enrollments

    # nothing left to do; re-running is harmless
    report = await resolver.reconcile()
    assert report.seen == 0
    assert len(cs.enrollments) == 1


@pytest.mark.asyncio
async def test_reconcile_keeps_failing_rows_for_next_cycle(university):
    registry = university.registry
    created = await request_math_module(university)
    registry.department_data["cs_schema"].external_requests[created.request_id].status = RequestStatus.Approving.value

    registry.unavailable.add("math_schema")
    report = await EnrollmentResolver(registry).reconcile()

    assert (report.seen, report.applied, report.failed) == (1, 0, 1)
    assert registry.department_data["cs_schema"].external_requests[created.request_id].status == (
        RequestStatus.Approving.value
    )


@pytest.mark.asyncio
async def test_reconcile_skips_request_the_reviewer_already_applied(university, monkeypatch):
    registry = university.registry
    created = await request_math_module(university)
    async with registry.central() as central:
        [row] = await central.list_external_requests(target_dept_id=MATH)
    # what a reconcile pass read while the reviewer was between steps 1 and 3
    stale = dict(row, status=RequestStatus.Approving.value)

    await EnrollmentResolver(registry).review(
        principal_of(university.math_admin),
        created.request_id,
        ReviewRequest(type=RequestType.External, action=ReviewAction.Approve, source_department_id=CS),
    )

    async def snapshot_rows(self, target_dept_id=None, status=None):
        return [stale]

    async def not_enrolled_yet(self, student_id, module_id, module_dept_id=None):
        return False

    monkeypatch.setattr(FakeCentralRepository, "list_external_requests", snapshot_rows)
    monkeypatch.setattr(FakeDepartmentRepository, "is_enrolled", not_enrolled_yet)

    report = await EnrollmentResolver(registry).reconcile()

    assert (report.seen, report.applied, report.failed) == (1, 0, 0)
    cs = registry.department_data["cs_schema"]
    assert [(e.module_id, e.module_dept_id) for e in cs.enrollments] == [(3, MATH)]
    assert cs.external_requests[created.request_id].status == RequestStatus.Approved.value
