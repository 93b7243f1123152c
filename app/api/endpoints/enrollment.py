# app/api/endpoints/enrollment.py

from typing import List

from fastapi import APIRouter, Depends, status

from app.api.deps import get_current_principal, get_enrollment_resolver
from app.schemas.enrollment import (
    EnrollmentRequestCreate,
    EnrollmentRequestCreated,
    EnrollmentRequestRead,
    ModuleOption,
)
from app.schemas.identity import Principal
from app.services.enrollment_service import EnrollmentResolver

router = APIRouter(prefix="/api/student/enrollment", tags=["Student Enrollment"])


# ----------------------------------------------------------
# 1. MODULES THE STUDENT CAN SEE (home + global)
# ----------------------------------------------------------
@router.get("/available-modules", response_model=List[ModuleOption])
async def available_modules(
    principal: Principal = Depends(get_current_principal),
    resolver: EnrollmentResolver = Depends(get_enrollment_resolver),
):
    return await resolver.list_available(principal)


# ----------------------------------------------------------
# 2. REQUEST ENROLLMENT
# ----------------------------------------------------------
@router.post("/request", response_model=EnrollmentRequestCreated, status_code=status.HTTP_201_CREATED)
async def request_enrollment(
    payload: EnrollmentRequestCreate,
    principal: Principal = Depends(get_current_principal),
    resolver: EnrollmentResolver = Depends(get_enrollment_resolver),
):
    return await resolver.request_enrollment(principal, payload)


# ----------------------------------------------------------
# 3. MY REQUESTS
# ----------------------------------------------------------
@router.get("/requests", response_model=List[EnrollmentRequestRead])
async def my_requests(
    principal: Principal = Depends(get_current_principal),
    resolver: EnrollmentResolver = Depends(get_enrollment_resolver),
):
    return await resolver.list_requests(principal)
