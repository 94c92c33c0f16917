"""Document and ledger transfer ingestion endpoints."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from riskguard.api.dependencies import get_pipeline, get_tenant_id
from riskguard.errors import ScoringTimeoutError, SubjectNotFoundError
from riskguard.pipeline.ingestion import RiskScoringPipeline
from riskguard.schemas.schemas import (
    DocumentCreate,
    ScoringRunResponse,
    TransferBatchResponse,
    TransferCreate,
)

logger = logging.getLogger(__name__)

documents_router = APIRouter(prefix="/api", tags=["documents"])


@documents_router.post("/documents", response_model=ScoringRunResponse, status_code=201)
async def ingest_document(
    body: DocumentCreate,
    tenant_id: str = Depends(get_tenant_id),
    pipeline: RiskScoringPipeline = Depends(get_pipeline),
) -> ScoringRunResponse:
    """Ingest an invoice and score it immediately.

    Args:
        body: Invoice payload.
        tenant_id: Tenant from the ``X-Tenant-ID`` header.
        pipeline: Process-wide scoring pipeline.

    Returns:
        The appended score and the alert it produced, if any.

    Raises:
        HTTPException: 404 if the client company is unknown, 409 if the
            document id already exists, 504 if scoring timed out.
    """
    try:
        outcome = await pipeline.ingest_document(tenant_id, body.model_dump())
    except SubjectNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ScoringTimeoutError as exc:
        raise HTTPException(status_code=504, detail=str(exc)) from exc

    if outcome is None:
        raise HTTPException(
            status_code=409,
            detail=f"Document '{body.document_id}' was already ingested",
        )
    return ScoringRunResponse.from_outcome(outcome)


@documents_router.post("/documents/{document_id}/score", response_model=ScoringRunResponse)
async def rescore_document(
    document_id: str,
    tenant_id: str = Depends(get_tenant_id),
    pipeline: RiskScoringPipeline = Depends(get_pipeline),
) -> ScoringRunResponse:
    """Score an already ingested document again; a new snapshot is appended."""
    try:
        outcome = await pipeline.score_document(tenant_id, document_id)
    except SubjectNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ScoringTimeoutError as exc:
        raise HTTPException(status_code=504, detail=str(exc)) from exc

    if outcome is None:
        raise HTTPException(
            status_code=409,
            detail=f"Document '{document_id}' is already being scored",
        )
    return ScoringRunResponse.from_outcome(outcome)


@documents_router.post("/transfers", response_model=TransferBatchResponse, status_code=201)
async def ingest_transfers(
    body: list[TransferCreate],
    tenant_id: str = Depends(get_tenant_id),
    pipeline: RiskScoringPipeline = Depends(get_pipeline),
) -> TransferBatchResponse:
    """Store ledger transfers for later company scoring.

    Transfers whose ``transfer_id`` already exists are skipped.

    Raises:
        HTTPException: 404 if a referenced client company is unknown.
    """
    try:
        stored = await pipeline.ingest_transfers(tenant_id, [t.model_dump() for t in body])
    except SubjectNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return TransferBatchResponse(received=len(body), stored=stored)
