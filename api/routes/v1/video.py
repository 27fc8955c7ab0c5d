"""
api/routes/v1/video.py -- Upload URLs and transcription status.

Routes:
  PUT /api/v1/video/presigned    -- presigned S3 PUT URL (auth + sliding-window limit)
  GET /api/v1/video/transcribe   -- transcript or job status for an upload (auth)

Both routes require an access token, and a verified email when
REQUIRE_EMAIL_VERIFICATION is set. Dependencies run in list order, so an
unverified caller is turned away before it spends rate-limit quota.

Objects are stored under "u<user id>-<fileName>", so a user can only look up
transcripts of their own uploads. The client polls /transcribe until the
status is COMPLETED; the first call for a file starts the Transcribe job.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request

from api.models import PresignedUrlResponse, TranscriptionResponse
from auth.dependencies import require_verified_email
from auth.models import User
from core.config import get_settings
from media.storage import UploadSigner, object_key, validate_file_name, validate_upload
from media.transcribe import TranscriptionService
from ratelimit.dependencies import rate_limit

logger = logging.getLogger("captionme.api.video")

router = APIRouter()


@router.put(
    "/video/presigned",
    response_model=PresignedUrlResponse,
    dependencies=[Depends(require_verified_email), Depends(rate_limit())],
)
def presigned_url(
    request: Request,
    file_name: str = Query(alias="fileName", max_length=1024),
    file_size: int = Query(alias="fileSize"),
    file_type: str = Query(alias="fileType", max_length=255),
    current_user: User = Depends(require_verified_email),
) -> PresignedUrlResponse:
    """Sign a short-lived PUT URL the browser uploads the video to directly.

    Returns the model (not a Response) so the X-RateLimit-* headers set by the
    rate_limit dependency are merged into the reply.
    """
    settings = get_settings()
    validate_upload(file_name, file_size, file_type, settings)

    signer: UploadSigner = request.app.state.upload_signer
    url = signer.presign_put(object_key(current_user.id, file_name), file_type)
    logger.info("Presigned upload %s for user_id=%s", file_name, current_user.id)
    return PresignedUrlResponse(url=url, file_name=file_name, expires_in=settings.presign_expire_seconds)


@router.get("/video/transcribe", response_model=TranscriptionResponse, response_model_exclude_none=True)
def transcription(
    request: Request,
    filename: str = Query(min_length=1, max_length=1024),
    current_user: User = Depends(require_verified_email),
) -> TranscriptionResponse:
    validate_file_name(filename)
    service: TranscriptionService = request.app.state.transcription
    result = service.lookup(object_key(current_user.id, filename))
    return TranscriptionResponse(status=result.status, transcription=result.transcription)
