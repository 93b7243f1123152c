# app/api/endpoints/department.py

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from app.api.deps import get_current_principal, get_enrollment_resolver, get_registry
from app.schemas.department import StudentCreate, StudentCreated
from app.schemas.enrollment import EnrollmentRequestRead, ReviewRequest, ReviewResult
from app.schemas.identity import Principal
from app.services.department_service import add_student
from app.services.enrollment_service import EnrollmentResolver

router = APIRouter(
    prefix="/api/department",
    tags=["Department Admin"]
)


# 1. Inbox: own requests + inbound cross-department requests
@router.get("/enrollment/requests", response_model=List[EnrollmentRequestRead])
async def department_requests(
    department_id: Optional[int] = Query(default=None, alias="departmentId"),
    principal: Principal = Depends(get_current_principal),
    resolver: EnrollmentResolver = Depends(get_enrollment_resolver),
):
    return await resolver.list_department_requests(principal, department_id)


# 2. Approve / reject
@router.put("/enrollment/requests/{request_id}", response_model=ReviewResult)
async def review_request(
    request_id: int,
    payload: ReviewRequest,
    principal: Principal = Depends(get_current_principal),
    resolver: EnrollmentResolver = Depends(get_enrollment_resolver),
):
    return await resolver.review(principal, request_id, payload)


# 3. Add a student (announced to the central directory through the outbox)
@router.post("/students", response_model=StudentCreated, status_code=status.HTTP_201_CREATED)
async def create_student(
    payload: StudentCreate,
    principal: Principal = Depends(get_current_principal),
    registry=Depends(get_registry),
):
    return await add_student(registry, principal, payload)
