"""
Call processing orchestrator: drives one call job from ``processing`` to
``completed`` or ``error``.

Flow for a single invocation:
    fetch job → claim lease → fetch audio → transcribe → extract → terminal commit

The lease (a fencing token written with a compare-and-set) guarantees that
at most one overlapping invocation for the same job commits a terminal
state; the others return the record as they found it.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Awaitable, Optional, TypeVar

import structlog
from pydantic import BaseModel

from loancall.config import Settings
from loancall.database import Database
from loancall.errors import (
    ArtifactUnavailable,
    ExtractionFailed,
    ExtractionMalformed,
    JobNotFound,
    LoanCallError,
    TranscriptionFailed,
)
from loancall.extraction import Extractor
from loancall.models import CallAnalysis, CallJob, CallStatus
from loancall.storage import ArtifactStore
from loancall.transcription import Transcriber

log = structlog.get_logger(__name__)

T = TypeVar("T")

_STEP_ERRORS = (ArtifactUnavailable, TranscriptionFailed, ExtractionFailed, ExtractionMalformed)


class ProcessResult(BaseModel):
    job: CallJob
    # True only for the invocation that wrote the terminal state
    committed: bool = False
    analysis: Optional[CallAnalysis] = None

    @property
    def in_progress_elsewhere(self) -> bool:
        return not self.committed and self.job.status is CallStatus.PROCESSING


class CallProcessor:
    """Coordinates artifact fetch, transcription and extraction for one job."""

    def __init__(
        self,
        settings: Settings,
        db: Database,
        store: ArtifactStore,
        transcriber: Transcriber,
        extractor: Extractor,
    ):
        self.settings = settings
        self.db = db
        self.store = store
        self.transcriber = transcriber
        self.extractor = extractor

    async def process(self, call_id: str) -> ProcessResult:
        job = await self.db.get_call(call_id)
        if job is None:
            raise JobNotFound(f"Call {call_id} not found")

        if job.status.is_terminal:
            log.info("call_already_terminal", call_id=call_id, status=job.status.value)
            return ProcessResult(job=job)

        token = uuid.uuid4().hex
        if not await self.db.claim_call(call_id, token, self.settings.claim_lease_seconds):
            log.info("call_claim_lost", call_id=call_id)
            return ProcessResult(job=await self._reload(call_id))

        log.info("call_processing_started", call_id=call_id, audio_url=job.audio_url)

        transcript: Optional[str] = None
        analysis: Optional[CallAnalysis] = None
        error_message: Optional[str] = None
        try:
            audio = await self._bounded(
                self.store.fetch(job.audio_url),
                self.settings.artifact_fetch_timeout,
                ArtifactUnavailable,
                "Audio fetch",
            )
            transcript = await self._bounded(
                self.transcriber.transcribe(audio),
                self.settings.transcription_timeout,
                TranscriptionFailed,
                "Transcription",
            )
            analysis = await self._bounded(
                self.extractor.extract(transcript),
                self.settings.extraction_timeout,
                ExtractionFailed,
                "Extraction",
            )
        except _STEP_ERRORS as e:
            error_message = f"{e.code}: {e.message}"
            log.warning(
                "call_processing_step_failed",
                call_id=call_id,
                cause=e.code,
                error=e.message,
                transcript_kept=transcript is not None,
            )
        except Exception as e:
            error_message = f"Unexpected error: {e}"
            log.exception("call_processing_crashed", call_id=call_id)

        status = CallStatus.ERROR if error_message else CallStatus.COMPLETED
        committed = await self.db.finish_call(
            call_id,
            token,
            status,
            transcript=transcript,
            analysis=analysis,
            error_message=error_message,
        )
        if not committed:
            # Our lease expired and another run took the job over.
            log.warning("call_commit_fenced_out", call_id=call_id, status=status.value)
            return ProcessResult(job=await self._reload(call_id))

        log.info("call_processing_finished", call_id=call_id, status=status.value)
        return ProcessResult(job=await self._reload(call_id), committed=True, analysis=analysis)

    async def recover_stale(self, limit: int = 50) -> list[ProcessResult]:
        """Re-run every processing job whose lease has lapsed, one task per job."""
        stale = await self.db.get_stale_calls(limit=limit)
        if not stale:
            return []
        log.info("stale_calls_found", count=len(stale))
        results = await asyncio.gather(
            *(self.process(job.id) for job in stale), return_exceptions=True
        )
        recovered = []
        for job, result in zip(stale, results):
            if isinstance(result, LoanCallError):
                log.error("stale_call_recovery_failed", call_id=job.id, error=result.message)
            elif isinstance(result, BaseException):
                raise result
            else:
                recovered.append(result)
        return recovered

    async def _reload(self, call_id: str) -> CallJob:
        job = await self.db.get_call(call_id)
        if job is None:
            raise JobNotFound(f"Call {call_id} not found")
        return job

    @staticmethod
    async def _bounded(
        step: Awaitable[T],
        timeout: float,
        error_cls: type[LoanCallError],
        what: str,
    ) -> T:
        try:
            return await asyncio.wait_for(step, timeout)
        except asyncio.TimeoutError as e:
            raise error_cls(f"{what} timed out after {timeout:g}s") from e
