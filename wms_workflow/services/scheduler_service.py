"""
Scheduler Service.

In-process runner for the engine's periodic jobs (SLA breach sweep,
cron-triggered rules).

    - ``register_job(name, interval_seconds=...)`` adds a function to the registry
    - ``SchedulerService.run_job`` runs one job in a fresh app context and
      records the outcome on its ScheduledJob row
    - ``SchedulerService.start`` spawns a daemon thread that runs every enabled
      job on its interval; it is only started when ``SCHEDULER_ENABLED`` is set
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from flask import Flask

from wms_workflow.models import db
from wms_workflow.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobSpec:
    name: str
    fn: Callable[[Flask], dict]
    interval_seconds: int
    description: str


_jobs: dict[str, JobSpec] = {}


def register_job(name: str, *, interval_seconds: int = 3600):
    """Decorator registering ``fn(app) -> dict`` as a periodic job.

    Usage:
        @register_job("sla_breach_sweep", interval_seconds=300)
        def sweep_sla_breaches(app):
            ...
    """
    def decorator(fn):
        summary = (fn.__doc__ or name).strip().splitlines()[0]
        _jobs[name] = JobSpec(name, fn, interval_seconds, summary)
        return fn
    return decorator


def get_registered_jobs() -> dict[str, JobSpec]:
    return dict(_jobs)


class SchedulerService:
    """Class-level scheduler bound to one Flask app."""

    _app: Flask | None = None
    _thread: threading.Thread | None = None
    _stop: threading.Event | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("Scheduler bound to app with jobs: %s", ", ".join(sorted(_jobs)) or "none")

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Insert a ScheduledJob row for each registered job that has none yet."""
        if cls._app is None:
            return []
        with cls._app.app_context():
            known = {name for (name,) in db.session.query(ScheduledJob.job_name).all()}
            created = [
                ScheduledJob(job_name=spec.name, description=spec.description,
                             interval_seconds=spec.interval_seconds, is_enabled=True)
                for spec in _jobs.values() if spec.name not in known
            ]
            if created:
                db.session.add_all(created)
                db.session.commit()
                logger.info("Registered job rows: %s", ", ".join(j.job_name for j in created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Run one job now, whatever its interval or pause flag.

        Returns:
            ``{job_name, status, duration_ms, result, error}``; status is
            ``success``, ``failed`` or ``error`` (unknown job / not initialised).
        """
        spec = _jobs.get(job_name)
        if spec is None:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        if cls._app is None:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        started = time.monotonic()
        result, error = None, None
        try:
            with cls._app.app_context():
                result = spec.fn(cls._app)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            logger.exception("Job %s failed", job_name, extra={"job_name": job_name})
        duration_ms = int((time.monotonic() - started) * 1000)

        with cls._app.app_context():
            row = ScheduledJob.query.filter_by(job_name=job_name).first()
            if row is not None:
                row.record_run(ok=error is None, duration_ms=duration_ms, result=result, error=error)
                db.session.commit()

        logger.info("Job %s finished in %dms", job_name, duration_ms,
                    extra={"job_name": job_name, "duration_ms": duration_ms})
        return {
            "job_name": job_name,
            "status": "success" if error is None else "failed",
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def list_jobs(cls) -> list[dict]:
        rows = {j.job_name: j for j in ScheduledJob.query.all()}
        listing = []
        for name, spec in sorted(_jobs.items()):
            row = rows.get(name)
            if row is not None:
                listing.append(row.to_dict())
            else:
                listing.append({"job_name": name, "description": spec.description,
                                "interval_seconds": spec.interval_seconds, "is_enabled": True,
                                "status": "unregistered"})
        return listing

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        row = ScheduledJob.query.filter_by(job_name=job_name).first()
        if row is None:
            return None
        row.is_enabled = bool(enabled)
        db.session.commit()
        logger.info("Job %s %s", job_name, "resumed" if enabled else "paused", extra={"job_name": job_name})
        return row.to_dict()

    # ── Background loop ───────────────────────────────────────────────────

    @classmethod
    def start(cls, tick_seconds: float = 15.0) -> None:
        if cls._thread is not None and cls._thread.is_alive():
            return
        cls.ensure_jobs_registered()
        cls._stop = threading.Event()
        cls._thread = threading.Thread(target=cls._loop, args=(cls._stop, tick_seconds),
                                       name="wms-scheduler", daemon=True)
        cls._thread.start()
        logger.info("Scheduler loop started (tick=%ss)", tick_seconds)

    @classmethod
    def stop(cls, timeout: float = 5.0) -> None:
        if cls._stop is not None:
            cls._stop.set()
        if cls._thread is not None:
            cls._thread.join(timeout=timeout)
        cls._thread = None
        cls._stop = None

    @classmethod
    def _due_jobs(cls, next_due: dict[str, float], now: float) -> list[str]:
        with cls._app.app_context():
            rows = {j.job_name: j for j in ScheduledJob.query.all()}
        due = []
        for name, spec in _jobs.items():
            row = rows.get(name)
            if row is not None and not row.is_enabled:
                continue
            if now >= next_due.get(name, 0.0):
                interval = row.interval_seconds if row is not None else spec.interval_seconds
                next_due[name] = now + interval
                due.append(name)
        return due

    @classmethod
    def _loop(cls, stop: threading.Event, tick_seconds: float) -> None:
        # Every job runs on the first tick, then on its own interval
        next_due: dict[str, float] = {}
        while not stop.wait(tick_seconds):
            try:
                due = cls._due_jobs(next_due, time.monotonic())
            except Exception:
                logger.exception("Scheduler could not read job state")
                continue
            for name in due:
                cls.run_job(name)
