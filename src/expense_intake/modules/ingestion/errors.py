from __future__ import annotations

from fastapi import HTTPException, status


class IngestionError(RuntimeError):
    """Failure at one of the orchestrator's I/O boundaries."""

    stage = "ingestion"

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        if stage:
            self.stage = stage
        self.message = message

    def __str__(self) -> str:
        return f"{self.stage}: {self.message}"


class UploadFailed(IngestionError):
    stage = "upload"


class SignedReferenceFailed(IngestionError):
    stage = "signed_reference"


class RecognitionFailed(IngestionError):
    stage = "recognition"


class ValidationFailed(IngestionError):
    stage = "validation"


class QuotaExceeded(IngestionError):
    stage = "quota"


class PersistenceFailed(IngestionError):
    stage = "persistence"


_HTTP_STATUS_BY_STAGE = {
    UploadFailed.stage: status.HTTP_502_BAD_GATEWAY,
    SignedReferenceFailed.stage: status.HTTP_502_BAD_GATEWAY,
    RecognitionFailed.stage: status.HTTP_502_BAD_GATEWAY,
    ValidationFailed.stage: 422,
    QuotaExceeded.stage: status.HTTP_429_TOO_MANY_REQUESTS,
    PersistenceFailed.stage: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def to_http_exception(error: IngestionError) -> HTTPException:
    return HTTPException(
        status_code=_HTTP_STATUS_BY_STAGE.get(error.stage, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail={"stage": error.stage, "detail": error.message},
    )
