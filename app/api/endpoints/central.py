# app/api/endpoints/central.py

from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from app.api.deps import get_current_principal, get_registry
from app.models.enums import ReportKind
from app.schemas.identity import Principal
from app.services.report_service import get_report

router = APIRouter(prefix="/api/central", tags=["Central Reports"])


@router.get("/{kind}", response_model=List[Dict[str, Any]])
async def central_report(
    kind: ReportKind,
    principal: Principal = Depends(get_current_principal),
    registry=Depends(get_registry),
):
    return await get_report(registry, kind, principal.user_id)
