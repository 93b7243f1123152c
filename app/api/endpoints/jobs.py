from fastapi import APIRouter, Depends, Header
from loguru import logger

from app.api.deps import get_directory_sync, get_enrollment_resolver
from app.core.config import settings
from app.core.exceptions import Forbidden
from app.schemas.enrollment import ReconcileReport
from app.schemas.sync import SyncReport
from app.services.directory_sync import DirectorySyncService
from app.services.enrollment_service import EnrollmentResolver

router = APIRouter(prefix="/api/jobs", tags=["Background Jobs"])


def require_job_secret(x_job_secret: str | None = Header(default=None)) -> None:
    if not settings.JOB_SECRET or x_job_secret != settings.JOB_SECRET:
        logger.warning("Unauthorized access attempt to background job.")
        raise Forbidden("Invalid or missing job secret")


@router.post("/directory-sync", response_model=SyncReport, dependencies=[Depends(require_job_secret)])
async def trigger_directory_sync(sync: DirectorySyncService = Depends(get_directory_sync)):
    """Same cycle the scheduler runs; skipped if one is already in flight."""
    return await sync.sync()


@router.post(
    "/reconcile-enrollments",
    response_model=ReconcileReport,
    dependencies=[Depends(require_job_secret)],
)
async def trigger_reconcile(resolver: EnrollmentResolver = Depends(get_enrollment_resolver)):
    return await resolver.reconcile()
