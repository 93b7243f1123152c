# app/services/enrollment_service.py

from typing import Any, Optional

from loguru import logger
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.core.exceptions import (
    Conflict,
    NotFound,
    ServiceUnavailable,
    ValidationFailed,
)
from app.models.enums import RequestStatus, RequestType, ReviewAction
from app.schemas.enrollment import (
    EnrollmentRequestCreate,
    EnrollmentRequestCreated,
    EnrollmentRequestRead,
    ModuleOption,
    ReconcileReport,
    ReviewRequest,
    ReviewResult,
)
from app.schemas.identity import DepartmentLink, LocalIdentity, Principal
from app.services.identity_map import IdentityMap
from app.services.role_service import RoleScopeResolver


def local_global_id(module_id: int, dept_id: int) -> str:
    return f"{module_id}-{dept_id}"


class EnrollmentResolver:
    """
    Module listing, enrollment requests and their review, across the
    student's home department and the global modules of other departments.
    """

    def __init__(
        self,
        registry,
        identity_map: Optional[IdentityMap] = None,
        role_resolver: Optional[RoleScopeResolver] = None,
    ):
        self.registry = registry
        self.identity_map = identity_map or IdentityMap(registry)
        self.role_resolver = role_resolver or RoleScopeResolver(registry, self.identity_map)

    async def _home(self, principal: Principal) -> LocalIdentity:
        return await self.identity_map.resolve_by_email(principal.email)

    async def _department_by_id(self, dept_id: int):
        async with self.registry.central() as central:
            department = await central.get_department(dept_id)
        if department is None:
            raise NotFound(f"Department {dept_id} not found")
        return department

    # ============================================================================
    # 1. LIST AVAILABLE MODULES
    # ============================================================================
    async def list_available(self, principal: Principal) -> list[ModuleOption]:
        home = await self._home(principal)

        async with self.registry.department(home.schema_prefix) as dept:
            local_rows = await dept.list_active_modules(home.local_user_id)

        async with self.registry.central() as central:
            global_rows = await central.list_global_modules(exclude_dept_id=home.dept_id)

        try:
            async with self.registry.department(home.schema_prefix) as dept:
                open_targets = await dept.open_external_targets(home.local_user_id)
                enrolled_targets = await dept.enrolled_external_modules(home.local_user_id)
        except (SQLAlchemyError, ServiceUnavailable) as e:
            logger.warning(f"Pending lookup for external modules failed, assuming none: {e!r}")
            open_targets, enrolled_targets = set(), set()

        modules = [
            ModuleOption(
                global_module_id=local_global_id(row["module_id"], home.dept_id),
                module_id=row["module_id"],
                dept_id=home.dept_id,
                department_name=home.department_name,
                code=row["code"],
                title=row["title"],
                credits=row.get("credits"),
                semester_id=row.get("semester_id"),
                is_global=False,
                is_enrolled=bool(row["is_enrolled"]),
                is_pending=bool(row["is_pending"]),
            )
            for row in local_rows
        ]

        for row in global_rows:
            key = (row["dept_id"], row["module_id"])
            modules.append(
                ModuleOption(
                    global_module_id=str(
                        row.get("global_module_id") or local_global_id(row["module_id"], row["dept_id"])
                    ),
                    module_id=row["module_id"],
                    dept_id=row["dept_id"],
                    department_name=row.get("department_name"),
                    code=row["code"],
                    title=row["title"],
                    credits=row.get("credits"),
                    semester_id=row.get("semester_id"),
                    is_global=True,
                    is_enrolled=key in enrolled_targets,
                    is_pending=key in open_targets,
                )
            )

        return modules

    # ============================================================================
    # 2. REQUEST ENROLLMENT
    # ============================================================================
    async def request_enrollment(
        self, principal: Principal, payload: EnrollmentRequestCreate
    ) -> EnrollmentRequestCreated:
        if payload.is_global and payload.department_id is None:
            raise ValidationFailed("departmentId is required for a global module")

        home = await self._home(principal)

        if payload.is_global and payload.department_id != home.dept_id:
            return await self._request_external(home, payload)
        return await self._request_local(home, payload)

    async def _request_local(self, home: LocalIdentity, payload: EnrollmentRequestCreate) -> EnrollmentRequestCreated:
        student_id = home.local_user_id
        try:
            async with self.registry.department(home.schema_prefix, transactional=True) as dept:
                if await dept.is_enrolled(student_id, payload.module_id):
                    raise Conflict("You are already enrolled in this module")
                if await dept.has_pending_request(student_id, payload.module_id):
                    raise Conflict("An enrollment request for this module is already pending")
                if await dept.get_active_module(payload.module_id) is None:
                    raise NotFound(f"Module {payload.module_id} not found or inactive")

                request = await dept.add_enrollment_request(student_id, payload.module_id, payload.reason)
        except IntegrityError:
            # Concurrent duplicate caught by the partial unique index
            raise Conflict("An enrollment request for this module is already pending")

        logger.info(
            f"Enrollment request {request.request_id}: student {student_id} -> "
            f"module {payload.module_id} in '{home.schema_prefix}'"
        )
        return EnrollmentRequestCreated(
            request_id=request.request_id,
            type=RequestType.Internal,
            status=RequestStatus.Pending.value,
            message="Enrollment request submitted",
        )

    async def _request_external(self, home: LocalIdentity, payload: EnrollmentRequestCreate) -> EnrollmentRequestCreated:
        student_id = home.local_user_id
        target_dept_id = payload.department_id

        async with self.registry.central() as central:
            module = await central.get_global_module(payload.module_id, target_dept_id)
        if module is None:
            raise NotFound(
                f"Global module {payload.module_id} is not offered by department {target_dept_id}"
            )

        try:
            async with self.registry.department(home.schema_prefix, transactional=True) as dept:
                if await dept.has_open_external_request(student_id, payload.module_id, target_dept_id):
                    raise Conflict("A request for this module is already pending")
                if await dept.is_enrolled(student_id, payload.module_id, target_dept_id):
                    raise Conflict("You are already enrolled in this module")

                # Module ids are per department: a home enrollment with the same raw id
                # is ambiguous, so refuse and name both modules.
                clashes = await dept.find_enrollments_by_module_id(student_id, payload.module_id)
                if clashes:
                    held = await self._describe_enrollment(dept, clashes[0], home)
                    raise Conflict(
                        f"Module id {payload.module_id} is ambiguous: you are enrolled in {held}, "
                        f"and the requested module is {module['code']} '{module['title']}' "
                        f"({module.get('department_name') or f'department {target_dept_id}'}). "
                        "Contact your department office to resolve this."
                    )

                request = await dept.add_external_request(
                    student_id, payload.module_id, target_dept_id, payload.reason
                )
        except IntegrityError:
            # Concurrent duplicate caught by the open-request unique index
            raise Conflict("A request for this module is already pending")

        logger.info(
            f"External request {request.request_id} in '{home.schema_prefix}': student {student_id} -> "
            f"module {payload.module_id} of dept {target_dept_id}"
        )
        return EnrollmentRequestCreated(
            request_id=request.request_id,
            type=RequestType.External,
            status=RequestStatus.Pending.value,
            message="Cross-department enrollment request submitted",
        )

    async def _describe_enrollment(self, dept, enrollment, home: LocalIdentity) -> str:
        if enrollment.module_dept_id is None:
            module = await dept.get_module(enrollment.module_id)
            if module is not None:
                return f"{module.code} '{module.title}' ({home.department_name or home.schema_prefix})"
            return f"module {enrollment.module_id} ({home.department_name or home.schema_prefix})"
        return f"module {enrollment.module_id} of department {enrollment.module_dept_id}"

    # ============================================================================
    # 3. STUDENT REQUEST HISTORY
    # ============================================================================
    async def list_requests(self, principal: Principal) -> list[EnrollmentRequestRead]:
        home = await self._home(principal)

        async with self.registry.department(home.schema_prefix) as dept:
            internal = await dept.list_enrollment_requests(student_id=home.local_user_id)
            external = await dept.list_external_requests(home.local_user_id)

        items = [self._internal_read(row, home.dept_id, home.department_name) for row in internal]

        catalogue: dict[tuple[int, int], Optional[dict[str, Any]]] = {}
        async with self.registry.central() as central:
            for request in external:
                key = (request.target_module_id, request.target_dept_id)
                if key not in catalogue:
                    catalogue[key] = await central.get_global_module(*key)

        for request in external:
            module = catalogue.get((request.target_module_id, request.target_dept_id)) or {}
            items.append(
                EnrollmentRequestRead(
                    request_id=request.request_id,
                    type=RequestType.External,
                    student_id=request.student_id,
                    student_email=principal.email,
                    module_id=request.target_module_id,
                    module_code=module.get("code"),
                    module_title=module.get("title"),
                    department_id=request.target_dept_id,
                    department_name=module.get("department_name"),
                    source_department_id=home.dept_id,
                    reason=request.reason,
                    status=request.status,
                    request_date=request.request_date,
                    reviewed_at=request.response_date,
                    notes=request.response_notes,
                )
            )

        return sorted(items, key=_newest_first)

    @staticmethod
    def _internal_read(row: dict[str, Any], dept_id: int, department_name: Optional[str]) -> EnrollmentRequestRead:
        return EnrollmentRequestRead(
            request_id=row["request_id"],
            type=RequestType.Internal,
            student_id=row["student_id"],
            student_email=row.get("student_email"),
            module_id=row["module_id"],
            module_code=row.get("module_code"),
            module_title=row.get("module_title"),
            department_id=dept_id,
            department_name=department_name,
            source_department_id=dept_id,
            reason=row.get("reason"),
            status=row["status"],
            request_date=row.get("request_date"),
            reviewed_at=row.get("review_date"),
            notes=row.get("reviewer_notes"),
        )

    # ============================================================================
    # 4. DEPARTMENT INBOX
    # ============================================================================
    async def _reviewing_department(self, principal: Principal, department_id: Optional[int]) -> DepartmentLink:
        resolved = await self.role_resolver.resolve(principal.user_id)
        return self.role_resolver.administered_department(resolved, department_id)

    async def list_department_requests(
        self, principal: Principal, department_id: Optional[int] = None
    ) -> list[EnrollmentRequestRead]:
        reviewer = await self._reviewing_department(principal, department_id)

        async with self.registry.department(reviewer.schema_prefix) as dept:
            internal = await dept.list_enrollment_requests()

        items = [self._internal_read(row, reviewer.dept_id, reviewer.department_name) for row in internal]

        async with self.registry.central() as central:
            inbound = await central.list_external_requests(target_dept_id=reviewer.dept_id)
            emails = {}
            for row in inbound:
                key = (row["student_id"], row["source_dept_id"])
                if key not in emails:
                    identity = await central.find_identity_by_local_id(*key)
                    emails[key] = identity["email"] if identity else None

        if inbound:
            async with self.registry.department(reviewer.schema_prefix) as dept:
                modules = {}
                for row in inbound:
                    module_id = row["target_module_id"]
                    if module_id not in modules:
                        modules[module_id] = await dept.get_module(module_id)

            for row in inbound:
                module = modules.get(row["target_module_id"])
                items.append(
                    EnrollmentRequestRead(
                        request_id=row["request_id"],
                        type=RequestType.External,
                        student_id=row["student_id"],
                        student_email=emails.get((row["student_id"], row["source_dept_id"])),
                        module_id=row["target_module_id"],
                        module_code=module.code if module else None,
                        module_title=module.title if module else None,
                        department_id=reviewer.dept_id,
                        department_name=reviewer.department_name,
                        source_department_id=row["source_dept_id"],
                        reason=row.get("reason"),
                        status=row["status"],
                        request_date=row.get("request_date"),
                        reviewed_at=row.get("response_date"),
                        notes=row.get("response_notes"),
                    )
                )

        return sorted(items, key=_newest_first)

    # ============================================================================
    # 5. REVIEW
    # ============================================================================
    async def review(self, principal: Principal, request_id: int, payload: ReviewRequest) -> ReviewResult:
        reviewer = await self._reviewing_department(principal, payload.department_id)
        if payload.type == RequestType.External:
            return await self._review_external(reviewer, request_id, payload)
        return await self._review_internal(reviewer, request_id, payload)

    async def _review_internal(self, reviewer: DepartmentLink, request_id: int, payload: ReviewRequest) -> ReviewResult:
        new_status = _status_for(payload.action)

        async with self.registry.department(reviewer.schema_prefix, transactional=True) as dept:
            request = await dept.get_enrollment_request(request_id)
            if request is None:
                raise NotFound(f"Enrollment request {request_id} not found")
            if request.status != RequestStatus.Pending.value:
                raise Conflict(f"Enrollment request {request_id} was already reviewed ({request.status})")

            updated = await dept.set_enrollment_request_status(
                request_id, new_status, payload.notes, expected_status=RequestStatus.Pending.value
            )
            if not updated:
                raise Conflict(f"Enrollment request {request_id} was already reviewed")

            if payload.action == ReviewAction.Approve:
                await dept.add_enrollment(request.student_id, request.module_id)

        logger.info(f"Request {request_id} in '{reviewer.schema_prefix}' -> {new_status}")
        return ReviewResult(request_id=request_id, type=RequestType.Internal, status=new_status)

    async def _review_external(self, reviewer: DepartmentLink, request_id: int, payload: ReviewRequest) -> ReviewResult:
        if payload.source_department_id is None:
            raise ValidationFailed("sourceDepartmentId is required for external requests")

        async with self.registry.central() as central:
            row = await central.get_external_request(payload.source_department_id, request_id)
        if row is None or row["target_dept_id"] != reviewer.dept_id:
            raise NotFound(
                f"External request {request_id} from department {payload.source_department_id} not found"
            )
        if row["status"] != RequestStatus.Pending.value:
            raise Conflict(f"External request {request_id} was already reviewed ({row['status']})")

        source = await self._department_by_id(payload.source_department_id)

        if payload.action == ReviewAction.Reject:
            async with self.registry.department(source.schema_prefix, transactional=True) as home:
                updated = await home.set_external_request_status(
                    request_id,
                    RequestStatus.Rejected.value,
                    payload.notes,
                    expected_status=RequestStatus.Pending.value,
                )
            if not updated:
                raise Conflict(f"External request {request_id} was already reviewed")
            logger.info(f"External request {request_id} of '{source.schema_prefix}' rejected")
            return ReviewResult(request_id=request_id, type=RequestType.External, status=RequestStatus.Rejected.value)

        # Step 1: mark the request as approved-but-not-applied in the home tenant
        async with self.registry.department(source.schema_prefix, transactional=True) as home:
            updated = await home.set_external_request_status(
                request_id,
                RequestStatus.Approving.value,
                payload.notes,
                expected_status=RequestStatus.Pending.value,
            )
        if not updated:
            raise Conflict(f"External request {request_id} was already reviewed")

        # Steps 2 and 3 touch two tenants without a shared transaction
        try:
            await self._apply_external_approval(
                source.dept_id,
                source.schema_prefix,
                reviewer.dept_id,
                reviewer.schema_prefix,
                request_id,
                row["student_id"],
                row["target_module_id"],
            )
        except Exception:
            logger.critical(
                f"External request {request_id} of '{source.schema_prefix}' approved by "
                f"'{reviewer.schema_prefix}' but not applied; left in "
                f"'{RequestStatus.Approving.value}' for reconciliation"
            )
            raise

        return ReviewResult(request_id=request_id, type=RequestType.External, status=RequestStatus.Approved.value)

    async def _apply_external_approval(
        self,
        source_dept_id: int,
        source_prefix: str,
        target_dept_id: int,
        target_prefix: str,
        request_id: int,
        student_id: int,
        module_id: int,
    ) -> bool:
        """
        Steps 2 and 3 of an external approval. Safe to repeat, and safe to run
        from a reviewer and a reconcile pass at once: False when the other
        one finished step 3 first.
        """
        try:
            identity = await self.identity_map.resolve_by_local_id(student_id, source_dept_id)
            email = identity.email
        except NotFound:
            logger.warning(f"No identity for student {student_id} of dept {source_dept_id}; roster row without email")
            email = None

        # Step 2: owning department's roster
        async with self.registry.department(target_prefix, transactional=True) as owner:
            await owner.add_external_enrollment(student_id, source_dept_id, module_id, email)

        # Step 3: final status and home enrollment, one home transaction.
        # The status update comes first: its row lock decides who inserts.
        async with self.registry.department(source_prefix, transactional=True) as home:
            claimed = await home.set_external_request_status(
                request_id,
                RequestStatus.Approved.value,
                None,
                expected_status=RequestStatus.Approving.value,
            )
            if not claimed:
                logger.info(f"External request {request_id} of '{source_prefix}' was already applied")
                return False
            await home.add_enrollment(student_id, module_id, module_dept_id=target_dept_id)

        logger.success(
            f"External request {request_id}: student {student_id} of '{source_prefix}' "
            f"enrolled in module {module_id} of '{target_prefix}'"
        )
        return True

    # ============================================================================
    # 6. RECONCILIATION
    # ============================================================================
    async def reconcile(self) -> ReconcileReport:
        """Finish every external approval left between step 1 and step 3."""
        async with self.registry.central() as central:
            rows = await central.list_external_requests(status=RequestStatus.Approving.value)
            departments = {d.dept_id: d for d in await central.list_departments()}

        report = ReconcileReport(seen=len(rows))
        for row in rows:
            source = departments.get(row["source_dept_id"])
            target = departments.get(row["target_dept_id"])
            if source is None or target is None:
                report.failed += 1
                logger.error(f"External request {row['request_id']} references an unknown department")
                continue
            try:
                if await self._apply_external_approval(
                    source.dept_id,
                    source.schema_prefix,
                    target.dept_id,
                    target.schema_prefix,
                    row["request_id"],
                    row["student_id"],
                    row["target_module_id"],
                ):
                    report.applied += 1
            except Exception:
                report.failed += 1
                logger.exception(
                    f"Reconciliation of external request {row['request_id']} "
                    f"of '{source.schema_prefix}' failed; will retry next cycle"
                )

        if rows:
            logger.info(f"Reconciliation: applied={report.applied} failed={report.failed}")
        return report


def _status_for(action: ReviewAction) -> str:
    if action == ReviewAction.Approve:
        return RequestStatus.Approved.value
    return RequestStatus.Rejected.value


def _newest_first(item: EnrollmentRequestRead):
    # Requests without a date sort last
    return (item.request_date is None, -(item.request_date.timestamp() if item.request_date else 0))
