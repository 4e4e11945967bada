"""
Durable work queue workers.

Jobs live in the ``work_jobs`` table (see storage.py). A WorkerPool claims due
jobs of one kind and runs them on a bounded thread pool:

    claim (queued -> running, attempts += 1)
        │
        ├── handler ok ──────────────▶ done
        ├── handler raises, attempts left ──▶ queued, run_at = now + backoff * 2^(n-1)
        └── handler raises, exhausted ──▶ failed + failed_transactions row + alert

A crash leaves jobs ``running``; ``BridgeStore.reset_running_jobs`` requeues them
on the next start.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from lockstep.bridge.alerts import AlertSink, LoggingAlertSink, Severity
from lockstep.bridge.observability import BridgeLayer, correlation_scope, get_logger
from lockstep.bridge.storage import BridgeStore, Job

BUILD_COMMITMENT = "build_commitment"
SUBMIT_ROOT = "submit_root"

# failed_transactions.tx_type for a job kind that ran out of attempts
FAILED_TX_TYPE = {
    BUILD_COMMITMENT: "generate_proof",
    SUBMIT_ROOT: "submit_root",
}

JobHandler = Callable[[Dict[str, Any]], Any]


class WorkerPool:
    """Runs one kind of job with at most ``concurrency`` in flight."""

    def __init__(
        self,
        store: BridgeStore,
        kind: str,
        handler: JobHandler,
        concurrency: int = 1,
        poll_interval: float = 1.0,
        alerts: Optional[AlertSink] = None,
        failed_max_retries: int = 3,
        failed_retry_delay_seconds: float = 300.0,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.store = store
        self.kind = kind
        self.handler = handler
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.alerts = alerts or LoggingAlertSink()
        self.failed_max_retries = failed_max_retries
        self.failed_retry_delay_seconds = failed_retry_delay_seconds
        self._executor: Optional[ThreadPoolExecutor] = None
        self._in_flight: Set[Future] = set()
        self._lock = threading.Lock()
        self._log = get_logger(f"pool-{kind}", BridgeLayer.QUEUE)
        self.completed = 0
        self.failed = 0

    def execute(self, job: Job) -> bool:
        """Run one claimed job and settle it. Returns True on success."""
        with correlation_scope(f"job-{self.kind}-{job.id}-{job.attempts}"):
            try:
                self.handler(job.payload)
            except Exception as exc:
                error = f"{type(exc).__name__}: {exc}"
                will_retry = self.store.fail_job(job.id, error)
                with self._lock:
                    self.failed += 1
                if will_retry:
                    self._log.warning("job failed, will retry", job_id=job.id, attempt=job.attempts,
                                      max_attempts=job.max_attempts, error=error)
                else:
                    self._exhausted(job, error)
                return False
            self.store.complete_job(job.id)
            with self._lock:
                self.completed += 1
            self._log.debug("job completed", job_id=job.id, attempt=job.attempts)
            return True

    def _exhausted(self, job: Job, error: str) -> None:
        tx_type = FAILED_TX_TYPE.get(self.kind, self.kind)
        chain = str(job.payload.get("chain") or job.payload.get("source_chain") or "")
        failed_id = self.store.record_failed_transaction(
            tx_type=tx_type,
            chain=chain,
            payload=dict(job.payload),
            error=error,
            max_retries=self.failed_max_retries,
            retry_delay_seconds=self.failed_retry_delay_seconds,
        )
        self._log.error("job exhausted its attempts", error_code="JOB_EXHAUSTED", job_id=job.id,
                        failed_id=failed_id, error=error)
        self.alerts.send(
            f"{tx_type} failed",
            f"{self.kind} job {job.dedup_key} failed after {job.attempts} attempts: {error}",
            Severity.CRITICAL,
        )

    def run_pending(self, now: Optional[datetime] = None, limit: int = 100) -> int:
        """Claim and run every due job inline. Returns the number of jobs run."""
        ran = 0
        while ran < limit:
            jobs = self.store.claim_jobs(self.kind, min(self.concurrency, limit - ran), now=now)
            if not jobs:
                break
            for job in jobs:
                self.execute(job)
                ran += 1
        return ran

    def _reap(self) -> int:
        with self._lock:
            self._in_flight = {f for f in self._in_flight if not f.done()}
            return self.concurrency - len(self._in_flight)

    def run(self, stop_event: threading.Event) -> None:
        """Poll and dispatch until ``stop_event`` is set, then drain in-flight jobs."""
        self._executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix=f"lockstep-{self.kind}")
        self._log.info("worker pool started", concurrency=self.concurrency)
        try:
            while not stop_event.is_set():
                free = self._reap()
                jobs: List[Job] = []
                if free > 0:
                    try:
                        jobs = self.store.claim_jobs(self.kind, free)
                    except Exception:
                        self._log.error("claiming jobs failed", exc_info=True)
                for job in jobs:
                    future = self._executor.submit(self.execute, job)
                    with self._lock:
                        self._in_flight.add(future)
                if not jobs:
                    stop_event.wait(self.poll_interval)
        finally:
            self._executor.shutdown(wait=True)
            self._log.info("worker pool stopped", completed=self.completed, failed=self.failed)
