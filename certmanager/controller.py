"""Host control loop driving the reconciler with APScheduler.

Each certificate request maps to at most one pending scheduler job and a
per-request lock, so a request is never reconciled by two workers at once
while independent requests run in parallel on the scheduler's thread pool.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from certmanager.exceptions import CertManagerError, NotFound
from certmanager.models import CertificateRequest, EventKind
from config.settings import RESYNC_INTERVAL_SECONDS, RETRY_BACKOFF_SECONDS

logger = logging.getLogger(__name__)

RESYNC_JOB_ID = "certificate_resync"
# a job queued while the previous run is still going waits on the lock
MAX_INSTANCES_PER_REQUEST = 2


def job_id(namespace: str, name: str) -> str:
    return f"reconcile:{namespace}/{name}"


class Controller:
    """Turn store changes, requeue hints and failures into reconcile jobs."""

    def __init__(
        self,
        reconciler,
        requests,
        scheduler=None,
        resync_interval: int = RESYNC_INTERVAL_SECONDS,
        backoff: Optional[list[int]] = None,
    ):
        self.reconciler = reconciler
        self.requests = requests
        self.scheduler = scheduler or BackgroundScheduler(daemon=True)
        self.resync_interval = resync_interval
        self.backoff = backoff or RETRY_BACKOFF_SECONDS
        self._failures: dict[str, int] = {}
        # key -> (lock, number of workers holding or waiting on it)
        self._locks: dict[str, tuple[threading.Lock, int]] = {}
        self._locks_guard = threading.Lock()

    # ---- Lifecycle ----

    def start(self) -> None:
        if self.scheduler.running:
            return
        self.scheduler.add_job(
            func=self.resync,
            trigger="interval",
            seconds=self.resync_interval,
            id=RESYNC_JOB_ID,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("Controller started: resync every %d second(s)", self.resync_interval)
        self.resync()

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)
            logger.info("Controller stopped")

    # ---- Event sources ----

    def apply(self, request: CertificateRequest) -> Optional[EventKind]:
        """Store a request and enqueue it if its spec is new or changed."""
        event = self.requests.apply(request)
        if event is not None:
            self.enqueue(request.namespace, request.name, event)
        return event

    def delete(self, namespace: str, name: str) -> None:
        self.requests.mark_deleted(namespace, name)
        self.enqueue(namespace, name, EventKind.DELETED)

    def secret_changed(self, namespace: str, secret_name: str) -> list[str]:
        """Enqueue every request that references a changed or deleted secret."""
        keys = []
        for request in self.requests.referencing_secret(namespace, secret_name):
            self.enqueue(request.namespace, request.name, EventKind.RESYNCED)
            keys.append(request.key)
        return keys

    def resync(self) -> None:
        requests = self.requests.list_all()
        for request in requests:
            self.enqueue(request.namespace, request.name, EventKind.RESYNCED)
        logger.info("Resync enqueued %d certificate(s)", len(requests))

    # ---- Scheduling ----

    def enqueue(
        self,
        namespace: str,
        name: str,
        event: EventKind,
        delay: Optional[timedelta] = None,
    ) -> None:
        """Schedule a reconcile, replacing any job pending for the same request.

        A pending spec change is never downgraded to a resync, and a pending
        job keeps its run date when that is earlier.
        """
        run_date = datetime.now(timezone.utc) + (delay or timedelta(0))
        existing = self.scheduler.get_job(job_id(namespace, name))
        if existing is not None:
            if event is EventKind.RESYNCED and existing.args and existing.args[2] is EventKind.UPDATED:
                event = EventKind.UPDATED
            pending_run = getattr(existing, "next_run_time", None)
            if pending_run is not None and pending_run < run_date:
                run_date = pending_run
        self.scheduler.add_job(
            func=self.process,
            trigger="date",
            run_date=run_date,
            args=[namespace, name, event],
            id=job_id(namespace, name),
            replace_existing=True,
            max_instances=MAX_INSTANCES_PER_REQUEST,
            coalesce=True,
            misfire_grace_time=None,
        )

    def process(self, namespace: str, name: str, event: EventKind) -> None:
        """Run one reconcile and schedule its follow-up."""
        key = f"{namespace}/{name}"
        with self._request_lock(key):
            self._process(key, namespace, name, event)

    def _process(self, key: str, namespace: str, name: str, event: EventKind) -> None:
        try:
            hint = self.reconciler.reconcile(namespace, name, event)
        except NotFound as e:
            if self._request_gone(namespace, name):
                logger.info("Certificate %s disappeared during reconcile", key)
                self._failures.pop(key, None)
                return
            delay = self._next_backoff(key)
            logger.warning(
                "Reconcile of %s hit a missing object, retrying in %d second(s): %s",
                key, delay.total_seconds(), e,
            )
            self.enqueue(namespace, name, event, delay=delay)
            return
        except CertManagerError as e:
            if not e.retryable:
                logger.error("Giving up on certificate %s until it changes: %s", key, e)
                self._failures.pop(key, None)
                return
            delay = self._next_backoff(key)
            logger.warning(
                "Reconcile of %s failed, retrying in %d second(s): %s",
                key, delay.total_seconds(), e,
            )
            self.enqueue(namespace, name, event, delay=delay)
            return
        except Exception:
            logger.exception("Unexpected error reconciling certificate %s", key)
            self.enqueue(namespace, name, event, delay=self._next_backoff(key))
            return

        self._failures.pop(key, None)
        if hint.requeue:
            logger.info("Certificate %s requeued in %s", key, hint.delay)
            self.enqueue(namespace, name, EventKind.RESYNCED, delay=hint.delay)

    def _request_gone(self, namespace: str, name: str) -> bool:
        try:
            return self.requests.get(namespace, name) is None
        except CertManagerError:
            return False

    @contextmanager
    def _request_lock(self, key: str):
        """Serialise work on one request; idle locks are dropped."""
        with self._locks_guard:
            lock, users = self._locks.get(key, (None, 0))
            lock = lock or threading.Lock()
            self._locks[key] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._locks_guard:
                lock, users = self._locks[key]
                if users <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)

    def _next_backoff(self, key: str) -> timedelta:
        attempt = self._failures.get(key, 0)
        self._failures[key] = attempt + 1
        return timedelta(seconds=self.backoff[min(attempt, len(self.backoff) - 1)])
