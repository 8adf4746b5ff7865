"""Enrichment orchestrator: turns a submitted complaint into an AnalysisRecord.

Work is split into three short units so no database transaction stays open
while the provider is thinking:

1. read the session, transcript and profile and build the prompt;
2. call the provider (with bounded retries) and sanitize its output;
3. insert the record and mark the session's analysis as completed.

Taxonomy failures never escape ``process_session``; they come back as a failed
Result and are recorded on the session (``analysis_status = 'failed'``). The
background and batch entry points also record anything unexpected so one bad
session cannot abort the others.
"""

import asyncio
import time
from typing import Callable, Iterable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.config import settings as app_settings
from app.database import SessionLocal
from app.logging_config import get_logger
from app.models import AnalysisRecord
from app.services import session_store, user_directory
from app.services.analysis_validator import parse_analysis_response, sanitize_analysis
from app.services.errors import (
    ComplaintError,
    InvalidStateError,
    NotFoundError,
    ProviderError,
    StorageError,
)
from app.services.llm import LLMProvider, get_analysis_provider
from app.services.prompt_service import build_prompt_for_session, extract_user_texts
from app.services.result import Result
from app.services.state_machine import SessionState

logger = get_logger("enrichment_service")

UNEXPECTED_ERROR_CODE = "unexpected_error"

ANALYSIS_ID_PREFIX = "aitag_"


def analysis_id_for(session_id: str) -> str:
    return f"{ANALYSIS_ID_PREFIX}{session_id}"


class EnrichmentOrchestrator:
    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        provider_factory: Optional[Callable[[], LLMProvider]] = None,
        settings=None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session_factory = session_factory
        self.settings = settings or app_settings
        self.provider_factory = provider_factory or (lambda: get_analysis_provider(self.settings))
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()

    # === READS ===

    def get_analysis(self, session_id: str) -> Optional[AnalysisRecord]:
        db = self.session_factory()
        try:
            return self._load_record(db, session_id)
        finally:
            db.close()

    @staticmethod
    def _load_record(db, session_id: str) -> Optional[AnalysisRecord]:
        return db.query(AnalysisRecord).filter(AnalysisRecord.session_id == session_id).first()

    def unanalyzed_session_ids(self, limit: int, department: Optional[str] = None) -> list[str]:
        db = self.session_factory()
        try:
            rows, _ = session_store.list_unanalyzed(db, limit=limit, department=department)
            return [row.id for row in rows]
        finally:
            db.close()

    # === SINGLE SESSION ===

    def process_session(self, session_id: str) -> Result[AnalysisRecord]:
        """Analyze one submitted session. Idempotent: an existing record is returned as is."""
        started = time.monotonic()
        try:
            existing, context = self._load_context(session_id)
        except ComplaintError as exc:
            logger.warning(
                "Analysis rejected",
                extra={"context": {"session_id": session_id, "error_code": exc.code, "error": str(exc)}},
            )
            return Result.from_error(exc)
        except SQLAlchemyError as exc:
            logger.error(f"Analysis read failed for {session_id}: {exc}", exc_info=True)
            return Result.failure(f"Storage error: {exc}", code=StorageError.code, retryable=True)
        if existing is not None:
            return Result.success(existing)

        try:
            response, attempt_errors, attempts = self._call_provider(context["prompt"])
            raw = parse_analysis_response(response.content)
        except ComplaintError as exc:
            self._record_failure(session_id, exc)
            return Result.from_error(exc)

        payload, warnings = sanitize_analysis(raw)
        processing_meta = {
            "model": response.model,
            "latency_ms": int((time.monotonic() - started) * 1000),
            "usage": response.usage,
            "attempts": attempts,
            "errors": attempt_errors + warnings,
        }
        user_texts = context["user_texts"]
        record = AnalysisRecord(
            id=analysis_id_for(session_id),
            session_id=session_id,
            complaint_id=context["complaint_id"],
            user_id=context["user_id"],
            employee_display_name=context["display_name"],
            department=context["department"],
            sentiment_label=payload.sentiment.label,
            sentiment_score=payload.sentiment.score,
            sentiment_confidence=payload.sentiment.confidence,
            primary_category=payload.classification.primary_category,
            secondary_categories=list(payload.classification.secondary_categories),
            severity=payload.classification.severity,
            urgency=payload.classification.urgency,
            keywords=[keyword.model_dump() for keyword in payload.keywords],
            key_phrases=payload.key_phrases,
            emotional_indicators=payload.emotional_indicators,
            summary=payload.summary,
            recommended_actions=payload.recommended_actions,
            message_count=len(user_texts),
            complaint_text_length=len(" ".join(user_texts)),
            complaint_start_time=context["start_time"],
            complaint_end_time=context["end_time"],
            processing_meta=processing_meta,
        )
        return self._store_record(record)

    def _load_context(self, session_id: str) -> tuple[Optional[AnalysisRecord], Optional[dict]]:
        db = self.session_factory()
        try:
            existing = self._load_record(db, session_id)
            if existing is not None:
                return existing, None

            session = session_store.require_session(db, session_id)
            if session.status != SessionState.SUBMITTED.value:
                raise InvalidStateError(f"Session {session_id} is {session.status}, not submitted")

            entries = session_store.list_entries(db, session_id)
            profile = user_directory.get_profile(db, session.user_id)
            context = {
                "prompt": build_prompt_for_session(session, entries, profile),
                "user_texts": extract_user_texts(entries),
                "complaint_id": session.complaint_id,
                "user_id": session.user_id,
                "display_name": profile.display_name if profile else None,
                "department": session.department or (profile.department if profile else None),
                "start_time": session.start_time,
                "end_time": session.end_time,
            }
            return None, context
        finally:
            db.close()

    def _call_provider(self, prompt: str):
        """Returns (response, errors from failed attempts, attempts used)."""
        provider = self.provider_factory()
        max_attempts = max(1, int(self.settings.analysis_max_attempts))
        errors: list[str] = []
        for attempt in range(1, max_attempts + 1):
            try:
                response = provider.generate(
                    prompt,
                    max_tokens=self.settings.analysis_max_tokens,
                    timeout_seconds=self.settings.analysis_timeout_seconds,
                )
                return response, errors, attempt
            except ProviderError as exc:
                errors.append(f"attempt {attempt}: {exc.reason}: {exc}")
                if not exc.retryable or attempt == max_attempts:
                    raise
                backoff = self.settings.analysis_retry_backoff_seconds * attempt
                logger.warning(
                    "Provider call failed, retrying",
                    extra={"context": {"attempt": attempt, "reason": exc.reason, "backoff": backoff}},
                )
                self._sleep(backoff)
        raise ProviderError("Provider retries exhausted")

    def _store_record(self, record: AnalysisRecord) -> Result[AnalysisRecord]:
        db = self.session_factory()
        try:
            db.add(record)
            db.flush()
            session_store.record_analysis_outcome(db, record.session_id)
            db.commit()
            db.refresh(record)
        except IntegrityError:
            # A concurrent run stored it first
            db.rollback()
            existing = self._load_record(db, record.session_id)
            if existing is not None:
                return Result.success(existing)
            logger.error(f"Analysis insert conflict without a stored record: {record.session_id}")
            return Result.failure("Analysis insert conflict", code=StorageError.code)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(f"Analysis insert failed for {record.session_id}: {exc}", exc_info=True)
            self._record_failure(record.session_id, StorageError(str(exc)))
            return Result.failure(f"Storage error: {exc}", code=StorageError.code, retryable=True)
        finally:
            db.close()

        logger.info(
            "Complaint analyzed",
            extra={
                "context": {
                    "session_id": record.session_id,
                    "complaint_id": record.complaint_id,
                    "sentiment": record.sentiment_label,
                    "category": record.primary_category,
                    "severity": record.severity,
                }
            },
        )
        return Result.success(record)

    def _record_failure(self, session_id: str, exc: Exception) -> None:
        code = getattr(exc, "code", UNEXPECTED_ERROR_CODE)
        logger.error(
            "Analysis failed",
            extra={"context": {"session_id": session_id, "error_code": code, "error": str(exc)}},
        )
        if isinstance(exc, NotFoundError):
            return
        db = self.session_factory()
        try:
            session_store.record_analysis_outcome(db, session_id, error=f"{code}: {exc}")
            db.commit()
        except SQLAlchemyError as store_exc:
            db.rollback()
            logger.error(f"Could not record analysis failure for {session_id}: {store_exc}")
        finally:
            db.close()

    # === ASYNC ENTRY POINTS ===

    async def process_session_async(self, session_id: str) -> Result[AnalysisRecord]:
        return await asyncio.to_thread(self.process_session, session_id)

    def dispatch(self, session_id: str) -> asyncio.Task:
        """Fire-and-forget analysis; the task is tracked until it finishes."""
        task = asyncio.get_running_loop().create_task(self._run_dispatched(session_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_dispatched(self, session_id: str) -> None:
        try:
            result = await self.process_session_async(session_id)
        except Exception as exc:
            logger.error(f"Background analysis crashed for {session_id}: {exc}", exc_info=True)
            await asyncio.to_thread(self._record_failure, session_id, exc)
            return
        if not result.ok:
            logger.warning(
                "Background analysis did not complete",
                extra={"context": {"session_id": session_id, "error_code": result.error_code}},
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every dispatched analysis to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def batch_process(
        self,
        session_ids: Iterable[str],
        concurrency: Optional[int] = None,
        delay_seconds: Optional[float] = None,
    ) -> dict:
        ids = list(dict.fromkeys(session_ids))
        concurrency = max(1, concurrency or self.settings.batch_concurrency)
        delay = self.settings.batch_delay_seconds if delay_seconds is None else delay_seconds
        semaphore = asyncio.Semaphore(concurrency)
        outcome = {"total": len(ids), "processed": [], "errors": [], "skipped": []}

        async def run_one(session_id: str) -> None:
            async with semaphore:
                existing = await asyncio.to_thread(self.get_analysis, session_id)
                if existing is not None:
                    outcome["skipped"].append(
                        {
                            "session_id": session_id,
                            "complaint_id": existing.complaint_id,
                            "reason": "already_analyzed",
                        }
                    )
                    return
                try:
                    result = await self.process_session_async(session_id)
                except Exception as exc:
                    logger.error(f"Batch analysis crashed for {session_id}: {exc}", exc_info=True)
                    await asyncio.to_thread(self._record_failure, session_id, exc)
                    result = Result.failure(str(exc), code=UNEXPECTED_ERROR_CODE)
                if result.ok:
                    outcome["processed"].append({"session_id": session_id, "complaint_id": result.value.complaint_id})
                else:
                    outcome["errors"].append(
                        {
                            "session_id": session_id,
                            "error": result.error,
                            "error_code": result.error_code,
                            "retryable": result.retryable,
                        }
                    )
                if delay > 0:
                    await asyncio.sleep(delay)

        await asyncio.gather(*(run_one(session_id) for session_id in ids))
        logger.info(
            "Batch analysis finished",
            extra={
                "context": {
                    "total": outcome["total"],
                    "processed": len(outcome["processed"]),
                    "errors": len(outcome["errors"]),
                    "skipped": len(outcome["skipped"]),
                }
            },
        )
        return outcome

    async def catch_up(self, limit: int = 20, department: Optional[str] = None) -> dict:
        """Analyze submitted sessions that have no record yet, oldest first."""
        ids = await asyncio.to_thread(self.unanalyzed_session_ids, limit, department)
        if not ids:
            return {"total": 0, "processed": [], "errors": [], "skipped": []}
        return await self.batch_process(ids, concurrency=self.settings.catch_up_concurrency)


_orchestrator: Optional[EnrichmentOrchestrator] = None


def get_orchestrator() -> EnrichmentOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = EnrichmentOrchestrator()
    return _orchestrator
