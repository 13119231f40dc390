"""
ClientDesk - Compliance Router

Compliance status, alerts and upcoming submission deadlines.
"""

from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from app.dependencies import get_compliance_service
from app.schemas.client import TaxPeriodsParseResponse, VatReturnMonthParseRequest
from app.services.compliance_service import AlertSeverity, ComplianceService
from app.services.vat_period_parser import parse_vat_return_month
from app.utils.clock import Clock, get_clock


router = APIRouter()


@router.get(
    "/clients/{client_id}",
    summary="Client compliance status",
    description="Score, status, missing documents, expiring documents, alerts and next due dates.",
)
async def get_client_compliance(
    client_id: UUID,
    service: ComplianceService = Depends(get_compliance_service),
) -> Dict[str, Any]:
    report = await service.get_client_compliance(client_id)
    return report.to_dict()


@router.get(
    "/alerts",
    summary="Portfolio alerts",
    description="Alerts and deadlines for all active clients, most urgent first.",
)
async def get_all_alerts(
    alert_type: Optional[str] = Query(None, alias="type", description="Substring of the alert type"),
    severity: Optional[AlertSeverity] = Query(None),
    service: ComplianceService = Depends(get_compliance_service),
) -> Dict[str, Any]:
    return await service.get_all_alerts(alert_type=alert_type, severity=severity)


@router.get(
    "/next-submissions",
    summary="Next VAT and Corporate Tax submissions",
)
async def get_next_submission_dates(
    service: ComplianceService = Depends(get_compliance_service),
) -> Dict[str, Any]:
    return await service.get_next_submission_dates()


@router.post(
    "/vat-return-months/parse",
    response_model=TaxPeriodsParseResponse,
    summary="Parse VAT return months",
    description='Turn text such as "Feb May Aug Nov" into a quarterly cycle and tax periods.',
)
async def parse_vat_return_months(
    request: VatReturnMonthParseRequest,
    clock: Clock = Depends(get_clock),
):
    year = request.year or clock.now().year
    return TaxPeriodsParseResponse(**parse_vat_return_month(request.text, year))
