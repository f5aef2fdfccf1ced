"""Durable job store with compare-and-swap claim semantics.

Every status change is a conditional ``UPDATE ... WHERE status = <expected>``
so concurrent workers can share one table without locks of their own. A claim
succeeds only for the worker whose update matched the still-pending row; the
claim token written alongside lets later writes prove they still own the job.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Iterable

from prometheus_client import Counter
from sqlalchemy import func, select, update

from .db import Database
from .errors import InvalidTransition, NotFound, StaleClaim
from .models import (
    AUTO_LOBE,
    TRANSITIONS,
    BrainRequest,
    BrainRequestModel,
    InputType,
    JobStatus,
    Memory,
    MemoryModel,
    MemoryType,
    to_brain_request,
    to_memory,
)

logger = logging.getLogger(__name__)

JOB_TRANSITIONS = Counter(
    "brain_job_transitions_total",
    "Job status transitions",
    ["status"],
)

CLAIM_ATTEMPTS = 5


def check_transition(current: JobStatus, target: JobStatus) -> None:
    """Raise ``InvalidTransition`` unless ``current -> target`` is allowed."""
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(f"{current.value} -> {target.value}")


class JobStore:
    """Persist brain requests and move them through their lifecycle."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ---------- creation / lookup ----------
    def create(
        self,
        user_id: str,
        query: str | None,
        *,
        file_id: str | None = None,
        input_type: InputType = InputType.TEXT,
        mode: str = "default",
        target_language: str = "en",
        requested_lobe: str = AUTO_LOBE,
        workspace_id: str | None = None,
    ) -> BrainRequest:
        now = time.time()
        model = BrainRequestModel(
            user_id=user_id,
            workspace_id=workspace_id,
            query=query,
            file_id=file_id,
            input_type=input_type.value,
            mode=mode,
            target_language=target_language,
            requested_lobe=requested_lobe,
            status=JobStatus.PENDING.value,
            attempts=0,
            created_at=now,
            updated_at=now,
        )
        with self.db.session() as sess:
            sess.add(model)
            sess.commit()
            JOB_TRANSITIONS.labels(JobStatus.PENDING.value).inc()
            return to_brain_request(model)

    def insert_done(self, user_id: str, query: str, output: Any, *, lobe: str, mode: str) -> BrainRequest:
        """Record a job that was produced internally and is already complete."""
        now = time.time()
        model = BrainRequestModel(
            user_id=user_id,
            query=query,
            input_type=InputType.TEXT.value,
            mode=mode,
            requested_lobe=lobe,
            selected_lobe=lobe,
            router_reason="internal",
            router_confidence=1.0,
            status=JobStatus.DONE.value,
            output=output,
            created_at=now,
            updated_at=now,
        )
        with self.db.session() as sess:
            sess.add(model)
            sess.commit()
            return to_brain_request(model)

    def get(self, job_id: str) -> BrainRequest:
        with self.db.session() as sess:
            model = sess.get(BrainRequestModel, job_id)
            if model is None:
                raise NotFound(job_id)
            return to_brain_request(model)

    def list_for_user(self, user_id: str, limit: int = 50) -> list[BrainRequest]:
        with self.db.session() as sess:
            rows = sess.scalars(
                select(BrainRequestModel)
                .where(BrainRequestModel.user_id == user_id)
                .order_by(BrainRequestModel.created_at.desc())
                .limit(limit)
            ).all()
            return [to_brain_request(m) for m in rows]

    # ---------- claim ----------
    def claim(self, worker_id: str = "worker") -> BrainRequest | None:
        """Atomically move one pending job to processing and return it.

        Returns ``None`` when nothing is pending. Which pending job is taken is
        unspecified.
        """
        for _ in range(CLAIM_ATTEMPTS):
            with self.db.session() as sess:
                candidates = sess.scalars(
                    select(BrainRequestModel.id)
                    .where(BrainRequestModel.status == JobStatus.PENDING.value)
                    .limit(CLAIM_ATTEMPTS)
                ).all()
            if not candidates:
                return None
            for job_id in candidates:
                job = self.try_claim(job_id, worker_id)
                if job is not None:
                    return job
        return None

    def try_claim(self, job_id: str, worker_id: str = "worker") -> BrainRequest | None:
        """Claim ``job_id`` if it is still pending; ``None`` if someone else won."""
        token = f"{worker_id}:{uuid.uuid4().hex}"
        now = time.time()
        with self.db.session() as sess:
            result = sess.execute(
                update(BrainRequestModel)
                .where(
                    BrainRequestModel.id == job_id,
                    BrainRequestModel.status == JobStatus.PENDING.value,
                )
                .values(
                    status=JobStatus.PROCESSING.value,
                    claimed_at=now,
                    claim_token=token,
                    attempts=BrainRequestModel.attempts + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            sess.commit()
            if result.rowcount != 1:
                return None
            model = sess.get(BrainRequestModel, job_id, populate_existing=True)
        JOB_TRANSITIONS.labels(JobStatus.PROCESSING.value).inc()
        logger.debug("claimed job %s as %s", job_id, token)
        return to_brain_request(model)

    # ---------- processing updates ----------
    def _guarded_update(self, job: BrainRequest, target: JobStatus | None, **values: Any) -> None:
        if target is not None:
            check_transition(JobStatus.PROCESSING, target)
        values["updated_at"] = time.time()
        if target is not None:
            values["status"] = target.value
        with self.db.session() as sess:
            result = sess.execute(
                update(BrainRequestModel)
                .where(
                    BrainRequestModel.id == job.id,
                    BrainRequestModel.status == JobStatus.PROCESSING.value,
                    BrainRequestModel.claim_token == job.claim_token,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                sess.rollback()
                raise self._stale(sess, job)
            sess.commit()

    def _stale(self, sess, job: BrainRequest) -> Exception:
        model = sess.get(BrainRequestModel, job.id)
        if model is None:
            return NotFound(job.id)
        if model.claim_token != job.claim_token or model.status == JobStatus.PENDING.value:
            return StaleClaim(f"job {job.id} was reclaimed")
        return InvalidTransition(f"job {job.id} is {model.status}, not processing")

    def set_route(self, job: BrainRequest, lobe: str, confidence: float, reason: str) -> None:
        self._guarded_update(
            job,
            None,
            selected_lobe=lobe,
            router_confidence=confidence,
            router_reason=reason,
        )

    def complete(
        self,
        job: BrainRequest,
        output: Any,
        *,
        derive_memory: bool = True,
    ) -> tuple[BrainRequest, Memory | None]:
        """Mark ``job`` done and, in the same transaction, store the derived memory."""
        check_transition(JobStatus.PROCESSING, JobStatus.DONE)
        now = time.time()
        with self.db.session() as sess:
            result = sess.execute(
                update(BrainRequestModel)
                .where(
                    BrainRequestModel.id == job.id,
                    BrainRequestModel.status == JobStatus.PROCESSING.value,
                    BrainRequestModel.claim_token == job.claim_token,
                )
                .values(status=JobStatus.DONE.value, output=output, error=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                sess.rollback()
                raise self._stale(sess, job)
            memory_model = None
            if derive_memory and output is not None:
                memory_model = MemoryModel(
                    user_id=job.user_id,
                    workspace_id=job.workspace_id,
                    content=output if isinstance(output, str) else str(output),
                    context=job.query,
                    types=MemoryType.ANSWER.value,
                    brain_req_id=job.id,
                    vector=[],
                    tags=[],
                    decay_rate=0,
                    next_review_at=now,
                    created_at=now,
                )
                sess.add(memory_model)
            sess.commit()
            model = sess.get(BrainRequestModel, job.id, populate_existing=True)
            done = to_brain_request(model)
            memory = to_memory(memory_model) if memory_model is not None else None
        JOB_TRANSITIONS.labels(JobStatus.DONE.value).inc()
        return done, memory

    def fail(self, job: BrainRequest, message: str) -> BrainRequest:
        self._guarded_update(job, JobStatus.ERROR, error=message)
        JOB_TRANSITIONS.labels(JobStatus.ERROR.value).inc()
        return self.get(job.id)

    # ---------- lease expiry ----------
    def requeue_stale(self, timeout: float, max_attempts: int) -> list[str]:
        """Return expired ``processing`` jobs to ``pending`` (or fail them).

        A job whose claim is older than ``timeout`` seconds is requeued unless it
        has already been claimed ``max_attempts`` times, in which case it is
        marked as an error.
        """
        cutoff = time.time() - timeout
        with self.db.session() as sess:
            stale = sess.execute(
                select(BrainRequestModel.id, BrainRequestModel.claim_token, BrainRequestModel.attempts).where(
                    BrainRequestModel.status == JobStatus.PROCESSING.value,
                    BrainRequestModel.claimed_at < cutoff,
                )
            ).all()
        requeued: list[str] = []
        for job_id, token, attempts in stale:
            exhausted = (attempts or 0) >= max_attempts
            values: dict[str, Any] = {"updated_at": time.time(), "claim_token": None}
            if exhausted:
                values.update(status=JobStatus.ERROR.value, error="lease expired")
            else:
                values.update(status=JobStatus.PENDING.value, claimed_at=None)
            with self.db.session() as sess:
                result = sess.execute(
                    update(BrainRequestModel)
                    .where(
                        BrainRequestModel.id == job_id,
                        BrainRequestModel.status == JobStatus.PROCESSING.value,
                        BrainRequestModel.claim_token == token,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                sess.commit()
            if result.rowcount == 1:
                status = JobStatus.ERROR if exhausted else JobStatus.PENDING
                JOB_TRANSITIONS.labels(status.value).inc()
                logger.warning("job %s lease expired; now %s", job_id, status.value)
                if not exhausted:
                    requeued.append(job_id)
        return requeued

    def count_by_status(self, statuses: Iterable[JobStatus] = tuple(JobStatus)) -> dict[str, int]:
        counts = {}
        with self.db.session() as sess:
            for status in statuses:
                counts[status.value] = sess.scalar(
                    select(func.count()).select_from(BrainRequestModel).where(BrainRequestModel.status == status.value)
                ) or 0
        return counts


__all__ = ["JobStore", "check_transition"]
