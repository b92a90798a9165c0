import logging

from fastapi import APIRouter, Depends, HTTPException, status

from planbridge.core.security import get_operator_principal
from planbridge.schemas.dashboard import OperationCountOut
from planbridge.services.dispatcher import ExecutionContext
from planbridge.services.pipeline import get_pipeline
from planbridge.services.repository import RepositoryUnavailableError

router = APIRouter()
logger = logging.getLogger(__name__)


def _require_operations_write(principal) -> None:
    try:
        principal.require_scopes({"operations:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


@router.post("/process-pending", response_model=OperationCountOut)
async def process_pending(
    principal=Depends(get_operator_principal),
    pipeline=Depends(get_pipeline),
) -> OperationCountOut:
    _require_operations_write(principal)
    try:
        receipt = await pipeline.process_pending(context=ExecutionContext.SYNCHRONOUS_TRIGGER)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    logger.info("manual process-pending by actor=%s count=%s", principal.actor_id, receipt.submitted)
    return OperationCountOut(count=receipt.submitted)


@router.post("/retry-failed", response_model=OperationCountOut)
async def retry_failed(
    principal=Depends(get_operator_principal),
    pipeline=Depends(get_pipeline),
) -> OperationCountOut:
    _require_operations_write(principal)
    try:
        count = await pipeline.retry.sweep(ignore_backoff=True, context=ExecutionContext.SYNCHRONOUS_TRIGGER)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    logger.info("manual retry-failed by actor=%s count=%s", principal.actor_id, count)
    return OperationCountOut(count=count)
