"""
ClientDesk - Celery Tasks

Background tasks: document extraction off the request path and the daily
compliance alert scan.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict

from celery import shared_task

from app.database import async_session_factory
from app.utils.error_handling import AppException

logger = logging.getLogger(__name__)


def run_async(coro):
    """Helper to run async functions in Celery tasks."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


# ===========================================
# DOCUMENT TASKS
# ===========================================

@shared_task(name='app.tasks.celery_tasks.process_client_document_task')
def process_client_document_task(client_id: str, document_id: str) -> Dict[str, Any]:
    """Run the extraction pipeline for one document."""
    return run_async(_process_client_document(uuid.UUID(client_id), uuid.UUID(document_id)))


async def _process_client_document(client_id: uuid.UUID, document_id: uuid.UUID) -> Dict[str, Any]:
    """Async implementation of document processing."""
    from app.services.client_service import ClientService
    from app.services.document_processor_service import DocumentProcessorService

    async with async_session_factory() as db:
        service = ClientService(db)
        try:
            response = await service.run_document_pipeline(
                client_id, document_id, DocumentProcessorService(),
            )
        except AppException as e:
            # The document has been marked FAILED (or was never claimed)
            logger.error(f"Background processing of document {document_id} failed: {e.message}")
            return {
                "status": "failed",
                "document_id": str(document_id),
                "error": e.to_dict(),
            }

        logger.info(f"Background processing of document {document_id} completed")
        return {
            "status": "completed",
            "document_id": str(document_id),
            "extraction_method": (response.document.processing_metadata or {}).get("extractionMethod"),
            "persons_updated": response.persons_updated,
            "applied_updates": sorted(response.applied_updates),
        }


# ===========================================
# COMPLIANCE TASKS
# ===========================================

@shared_task(name='app.tasks.celery_tasks.scan_compliance_alerts_task')
def scan_compliance_alerts_task() -> Dict[str, Any]:
    """Compute portfolio alerts and log the critical ones."""
    return run_async(_scan_compliance_alerts())


async def _scan_compliance_alerts() -> Dict[str, Any]:
    """Async implementation of the compliance scan."""
    from app.services.compliance_service import AlertSeverity, ComplianceService

    async with async_session_factory() as db:
        portfolio = await ComplianceService(db).get_all_alerts()

    critical = [a for a in portfolio["alerts"] if a["severity"] == AlertSeverity.CRITICAL.value]
    for alert in critical:
        logger.warning(f"[{alert.get('client_name')}] {alert['type']}: {alert['message']}")

    logger.info(
        f"Compliance scan: {portfolio['total_alerts']} alerts ({len(critical)} critical), "
        f"{portfolio['total_deadlines']} deadlines"
    )
    return {
        "status": "completed",
        "total_alerts": portfolio["total_alerts"],
        "critical_alerts": len(critical),
        "total_deadlines": portfolio["total_deadlines"],
    }
