from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from planbridge.schemas.submissions import (
    SubmissionAcceptedOut,
    SubmissionIn,
    SubmissionRejectedOut,
    SubmissionStatusOut,
)
from planbridge.services.intake import IntakeMetadata, IntakeRateLimitedError, IntakeValidationError
from planbridge.services.pipeline import get_pipeline
from planbridge.services.repository import RepositoryUnavailableError

router = APIRouter()


@router.post(
    "",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SubmissionAcceptedOut,
    responses={
        status.HTTP_422_UNPROCESSABLE_CONTENT: {"model": SubmissionRejectedOut},
        status.HTTP_429_TOO_MANY_REQUESTS: {"model": SubmissionRejectedOut},
    },
)
async def create_submission(
    payload: SubmissionIn,
    request: Request,
    pipeline=Depends(get_pipeline),
) -> SubmissionAcceptedOut | JSONResponse:
    metadata = IntakeMetadata(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        session_id=payload.session_id,
    )
    try:
        accepted = await pipeline.intake.accept(payload.to_intake_payload(), metadata=metadata)
    except IntakeRateLimitedError as exc:
        return _rejection(status.HTTP_429_TOO_MANY_REQUESTS, exc.reason, exc.message)
    except IntakeValidationError as exc:
        return _rejection(status.HTTP_422_UNPROCESSABLE_CONTENT, exc.reason, exc.message)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return SubmissionAcceptedOut(reference_id=accepted.reference_id)


@router.get("/{reference_id}", response_model=SubmissionStatusOut)
async def get_submission_status(reference_id: str, pipeline=Depends(get_pipeline)) -> SubmissionStatusOut:
    try:
        record = await pipeline.repository.get_submission_by_reference(reference_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="submission not found")

    return SubmissionStatusOut(
        reference_id=record.reference_id,
        status=record.status.value,
        production_plan_id=record.production_plan_id,
        submitted_at=record.created_at,
    )


def _rejection(status_code: int, reason: str, message: str) -> JSONResponse:
    body = SubmissionRejectedOut(reason=reason, message=message)
    return JSONResponse(status_code=status_code, content=body.model_dump())
