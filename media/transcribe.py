"""
media/transcribe.py -- AWS Transcribe job wrapper.

lookup(filename) answers "where is the transcript for this upload?" in three
steps, cheapest first:
  1. A finished transcript object "<filename>.transcription" in the bucket
     -> COMPLETED with the parsed JSON.
  2. An existing Transcribe job named after the file -> its status.
  3. Neither -> start a job (language auto-detected, output written to
     "<filename>.transcription") and return the new job's status.

"Not there" and "could not ask" are different outcomes. The two _find_*
helpers return None only for a genuine miss (NoSuchKey, job not found); any
other AWS failure raises UpstreamError so the caller never starts a duplicate
job because S3 or Transcribe was briefly unreachable.

The client polls; this module never waits on a job.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from botocore.exceptions import BotoCoreError, ClientError

from core.errors import UpstreamError

logger = logging.getLogger("captionme.media.transcribe")

TRANSCRIPT_SUFFIX = ".transcription"
COMPLETED = "COMPLETED"

_S3_MISSING = {"NoSuchKey", "404", "NotFound"}


@dataclass(frozen=True)
class TranscriptionResult:
    status: str
    transcription: dict | None = None


class TranscriptionService:
    def __init__(self, s3_client, transcribe_client, bucket: str) -> None:
        self._s3 = s3_client
        self._transcribe = transcribe_client
        self._bucket = bucket

    def lookup(self, filename: str) -> TranscriptionResult:
        transcript = self._find_transcript(filename)
        if transcript is not None:
            return TranscriptionResult(status=COMPLETED, transcription=transcript)

        status = self._find_job_status(filename)
        if status is not None:
            return TranscriptionResult(status=status)

        return TranscriptionResult(status=self._start_job(filename))

    def _find_transcript(self, filename: str) -> dict | None:
        key = filename + TRANSCRIPT_SUFFIX
        try:
            obj = self._s3.get_object(Bucket=self._bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _S3_MISSING:
                return None
            logger.error("Reading transcript %s failed: %s", key, exc)
            raise UpstreamError() from exc
        except BotoCoreError as exc:
            logger.error("Reading transcript %s failed: %s", key, exc)
            raise UpstreamError() from exc

        body = obj["Body"].read()
        try:
            return json.loads(body)
        except ValueError as exc:
            logger.error("Transcript %s is not valid JSON", key)
            raise UpstreamError() from exc

    def _find_job_status(self, filename: str) -> str | None:
        try:
            resp = self._transcribe.get_transcription_job(TranscriptionJobName=filename)
        except ClientError as exc:
            error = exc.response.get("Error", {})
            # Transcribe reports an unknown job name as BadRequestException.
            if error.get("Code") == "BadRequestException" and "couldn't be found" in error.get("Message", ""):
                return None
            logger.error("Fetching transcription job %s failed: %s", filename, exc)
            raise UpstreamError() from exc
        except BotoCoreError as exc:
            logger.error("Fetching transcription job %s failed: %s", filename, exc)
            raise UpstreamError() from exc
        return resp["TranscriptionJob"]["TranscriptionJobStatus"]

    def _start_job(self, filename: str) -> str:
        try:
            resp = self._transcribe.start_transcription_job(
                TranscriptionJobName=filename,
                OutputBucketName=self._bucket,
                OutputKey=filename + TRANSCRIPT_SUFFIX,
                IdentifyLanguage=True,
                Media={"MediaFileUri": f"s3://{self._bucket}/{filename}"},
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("Starting transcription job %s failed: %s", filename, exc)
            raise UpstreamError() from exc
        logger.info("Started transcription job %s", filename)
        return resp["TranscriptionJob"]["TranscriptionJobStatus"]
