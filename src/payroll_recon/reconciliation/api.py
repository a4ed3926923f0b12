"""API endpoints for reconciliation runs and mapping templates."""

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..audit import LoggingAuditRecorder
from ..auth import get_actor, limiter, verify_api_key
from ..config import get_settings
from ..database import TemplateStatus, get_db, get_session_factory_dependency
from .file_reader import FileReaderBase, get_file_reader
from .models import Actor, ApplyTemplateInput, ApplyTemplateResult, RunOutcome
from .service import ReconciliationService
from .templates import MappingTemplateService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])
templates_router = APIRouter(prefix="/templates", tags=["templates"])

REPORT_FORMATS = ("json", "csv", "text")


class TemplateStatusBody(BaseModel):
    """Request body for publishing or deprecating a template version."""
    status: TemplateStatus = Field(..., description="Target template status")


def get_file_reader_dependency() -> FileReaderBase:
    """FastAPI dependency returning the import file reader."""
    return get_file_reader("csv")


def _service(
    session_factory: async_sessionmaker[AsyncSession],
    file_reader: FileReaderBase,
    actor: Actor,
) -> ReconciliationService:
    return ReconciliationService(
        session_factory,
        file_reader=file_reader,
        audit=LoggingAuditRecorder(firm_id=actor.firm_id, actor_id=actor.user_id),
        settings=get_settings(),
    )


@router.post("/pay-runs/{pay_run_id}/runs", response_model=RunOutcome)
@limiter.limit("30/minute")
async def create_reconciliation_run(
    request: Request,
    pay_run_id: str,
    actor: Actor = Depends(get_actor),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory_dependency),
    file_reader: FileReaderBase = Depends(get_file_reader_dependency),
    api_key: str = Depends(verify_api_key),
):
    """
    Run the check catalogue against a pay run's latest imports.

    Returns the run id, run number and check and exception counts.
    """
    logger.info(f"Reconciliation requested for pay run {pay_run_id} by {actor.user_id}")
    service = _service(session_factory, file_reader, actor)
    return await service.run_reconciliation(actor, pay_run_id)


@router.get("/pay-runs/{pay_run_id}/runs")
async def list_reconciliation_runs(
    pay_run_id: str,
    actor: Actor = Depends(get_actor),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory_dependency),
    file_reader: FileReaderBase = Depends(get_file_reader_dependency),
    api_key: str = Depends(verify_api_key),
) -> List[Dict[str, Any]]:
    """List a pay run's reconciliation runs, newest first."""
    service = _service(session_factory, file_reader, actor)
    runs = await service.list_runs(actor, pay_run_id)
    return [run.to_dict() for run in runs]


@router.get("/runs/{run_id}/report")
async def get_reconciliation_report(
    run_id: str,
    include_details: bool = Query(default=True, description="Include check results and exceptions"),
    format: str = Query(default="json", description="Output format: json, csv, text"),
    actor: Actor = Depends(get_actor),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory_dependency),
    file_reader: FileReaderBase = Depends(get_file_reader_dependency),
    api_key: str = Depends(verify_api_key),
):
    """
    Render a run's report.

    JSON returns the structured report; csv and text return plain text.
    """
    if format not in REPORT_FORMATS:
        raise HTTPException(
            status_code=400,
            detail="format must be one of: json, csv, text"
        )

    service = _service(session_factory, file_reader, actor)
    report = await service.get_run_report(actor, run_id)

    if format == "json":
        return report.to_full_dict() if include_details else report.to_summary_dict()

    output = service.generate_report(report=report, format=format, include_details=include_details)
    content_type = "text/csv" if format == "csv" else "text/plain"
    return PlainTextResponse(content=output, media_type=content_type)


@router.get("/health")
async def reconciliation_health():
    """Health check endpoint for reconciliation service."""
    return {"status": "healthy", "service": "reconciliation"}


@templates_router.post("/apply", response_model=ApplyTemplateResult)
@limiter.limit("60/minute")
async def apply_template(
    request: Request,
    body: ApplyTemplateInput,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """
    Map an import's columns, reusing or versioning a mapping template.

    Drift against an existing template is rejected unless
    ``create_new_version`` is set.
    """
    service = MappingTemplateService(
        db, LoggingAuditRecorder(firm_id=actor.firm_id, actor_id=actor.user_id),
    )
    return await service.apply_mapping_template(actor, body)


@templates_router.post("/{template_id}/status")
async def update_template_status(
    template_id: str,
    body: TemplateStatusBody,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
) -> Dict[str, Any]:
    """Publish, deprecate or return a template version to draft."""
    service = MappingTemplateService(
        db, LoggingAuditRecorder(firm_id=actor.firm_id, actor_id=actor.user_id),
    )
    template = await service.update_template_status(actor, template_id, body.status.value)
    return template.to_dict()
