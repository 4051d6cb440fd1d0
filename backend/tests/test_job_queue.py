from __future__ import annotations

from datetime import datetime, timedelta, timezone
from threading import Event, Timer
from unittest import TestCase

from app.core.config import Settings
from app.core.errors import InvalidStateError, NotFoundError, ValidationError
from app.db.base import Base
from app.db.session import build_engine, build_session_factory
from app.repositories.jobs import claim_job, transition_job, update_job_progress
from app.services.alerts import AlertService
from app.services.jobs import JobQueueService, JobWorker, truncate_error

T0 = datetime(2026, 4, 1, 6, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now


class _RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict]] = []

    def publish(self, channel: str, event: str, payload: dict | None = None) -> int:
        self.events.append((channel, event, dict(payload or {})))
        return 0


def _window(building_id: int = 3) -> dict[str, object]:
    return {
        "building_id": building_id,
        "start_date": (T0 - timedelta(days=7)).isoformat(),
        "end_date": T0.isoformat(),
    }


class _JobTestCase(TestCase):
    def setUp(self) -> None:
        engine = build_engine("sqlite://")
        Base.metadata.create_all(engine)
        self.session_factory = build_session_factory(engine)
        self.clock = _Clock(T0)
        self.settings = Settings(
            database_url="sqlite://",
            job_batch_size=3,
            job_handler_timeout_seconds=1,
            job_error_message_max_length=64,
        )
        self.queue = JobQueueService(settings=self.settings, clock=self.clock)
        self.notifier = _RecordingNotifier()
        self.alert_service = AlertService(settings=self.settings, clock=self.clock)

    def _worker(self, handlers) -> JobWorker:
        worker = JobWorker(
            settings=self.settings,
            session_factory=self.session_factory,
            alert_service=self.alert_service,
            notifier=self.notifier,
            handlers=handlers,
            clock=self.clock,
        )
        self.addCleanup(worker.stop)
        return worker

    def _queue(self, job_type: str = "efficiency_analysis", **parameters) -> int:
        with self.session_factory() as db:
            job = self.queue.create_job(db, job_type=job_type, building_id=3, parameters=parameters or _window())
            return job.id

    def _job(self, job_id: int):
        with self.session_factory() as db:
            return self.queue.get_job(db, job_id)


class JobCreationTests(_JobTestCase):
    def test_unknown_job_type_is_rejected(self) -> None:
        with self.session_factory() as db:
            with self.assertRaises(ValidationError):
                self.queue.create_job(db, job_type="report_generation", parameters={})

    def test_parameters_are_validated_per_job_type(self) -> None:
        with self.session_factory() as db:
            with self.assertRaises(ValidationError) as ctx:
                self.queue.create_job(db, job_type="compliance_check", parameters={"check_types": ["hvac"]})
        self.assertIsNotNone(ctx.exception.detail)

        with self.session_factory() as db:
            with self.assertRaises(ValidationError):
                self.queue.create_job(
                    db,
                    job_type="anomaly_detection",
                    parameters={**_window(), "unexpected": True},
                )

    def test_job_level_building_fills_parameters(self) -> None:
        with self.session_factory() as db:
            job = self.queue.create_job(db, job_type="alert_monitoring", building_id=8, parameters={})

        self.assertEqual(job.status, "pending")
        self.assertEqual(job.progress_percentage, 0.0)
        self.assertEqual(job.parameters_json["building_id"], 8)
        self.assertEqual(job.parameters_json["window_minutes"], 60)

    def test_missing_job_raises_not_found(self) -> None:
        with self.session_factory() as db:
            with self.assertRaises(NotFoundError):
                self.queue.get_job(db, 404)


class JobLifecycleTests(_JobTestCase):
    def test_transitions_are_monotonic(self) -> None:
        job_id = self._queue()
        with self.session_factory() as db:
            self.assertIsNotNone(claim_job(db, job_id=job_id, now=T0))
            self.assertIsNone(claim_job(db, job_id=job_id, now=T0))
            transition_job(db, job_id=job_id, from_status="running", to_status="completed", now=T0)

            with self.assertRaises(InvalidStateError):
                transition_job(db, job_id=job_id, from_status="completed", to_status="running", now=T0)
            with self.assertRaises(InvalidStateError):
                transition_job(db, job_id=job_id, from_status="running", to_status="failed", now=T0)

    def test_progress_only_moves_while_running(self) -> None:
        job_id = self._queue()
        with self.session_factory() as db:
            self.assertFalse(update_job_progress(db, job_id=job_id, progress=30, now=T0))
            claim_job(db, job_id=job_id, now=T0)
            self.assertTrue(update_job_progress(db, job_id=job_id, progress=130, now=T0))

        self.assertEqual(self._job(job_id).progress_percentage, 100.0)


class JobWorkerTests(_JobTestCase):
    def test_successful_handler_completes_job(self) -> None:
        job_id = self._queue()

        def handler(context):
            context.report_progress(50)
            return {"building_id": context.parameters.building_id}

        processed = self._worker({"efficiency_analysis": handler}).run_once()

        self.assertEqual(processed, [job_id])
        job = self._job(job_id)
        self.assertEqual(job.status, "completed")
        self.assertEqual(job.progress_percentage, 100.0)
        self.assertEqual(job.result_data, {"building_id": 3})
        self.assertIsNotNone(job.started_at)
        self.assertIsNotNone(job.completed_at)
        self.assertEqual(self.notifier.events[-1][:2], ("building:3", "jobCompleted"))

    def test_failing_handler_records_truncated_error(self) -> None:
        job_id = self._queue()

        def handler(_context):
            raise RuntimeError("x" * 500)

        self._worker({"efficiency_analysis": handler}).run_once()

        job = self._job(job_id)
        self.assertEqual(job.status, "failed")
        self.assertLessEqual(len(job.error_message), 64)
        self.assertTrue(job.error_message.startswith("RuntimeError: xxx"))
        self.assertEqual(self.notifier.events[-1][1], "jobFailed")

    def test_timed_out_handler_fails_job(self) -> None:
        job_id = self._queue()

        def handler(context):
            context.stop_event.wait(5)
            context.ensure_active()
            return {}

        self._worker({"efficiency_analysis": handler}).run_once()

        job = self._job(job_id)
        self.assertEqual(job.status, "failed")
        self.assertIn("timed out", job.error_message)

    def test_timeout_starts_when_handler_gets_a_thread(self) -> None:
        self.settings = Settings(
            database_url="sqlite://",
            job_batch_size=1,
            job_handler_timeout_seconds=1,
        )
        hung_ids = {self._queue(), self._queue()}
        last_id = self._queue()
        release = Event()
        self.addCleanup(release.set)

        def handler(context):
            if context.job_id in hung_ids:
                # ignores the stop signal so its thread stays busy past the timeout
                release.wait(10)
            return {"job_id": context.job_id}

        worker = self._worker({"efficiency_analysis": handler})
        worker.run_once()
        worker.run_once()
        # both handler threads are now held by the timed-out jobs
        timer = Timer(1.5, release.set)
        timer.start()
        self.addCleanup(timer.cancel)
        worker.run_once()

        self.assertEqual([self._job(job_id).status for job_id in sorted(hung_ids)], ["failed", "failed"])
        job = self._job(last_id)
        self.assertEqual(job.status, "completed", job.error_message)
        self.assertEqual(job.result_data, {"job_id": last_id})

    def test_job_without_handler_fails_without_retry(self) -> None:
        job_id = self._queue()
        worker = self._worker({})

        worker.run_once()
        self.assertEqual(worker.run_once(), [])

        job = self._job(job_id)
        self.assertEqual(job.status, "failed")
        self.assertIn("No handler registered", job.error_message)

    def test_batch_claims_oldest_pending_first(self) -> None:
        ids = [self._queue() for _ in range(4)]
        seen: list[int] = []

        def handler(context):
            seen.append(context.job_id)
            return {}

        processed = self._worker({"efficiency_analysis": handler}).run_once()

        self.assertEqual(processed, ids[:3])
        self.assertEqual(seen, ids[:3])
        self.assertEqual(self._job(ids[3]).status, "pending")

    def test_status_reports_registered_types(self) -> None:
        worker = self._worker({"efficiency_analysis": lambda _context: {}})

        status = worker.get_status()

        self.assertFalse(status["running"])
        self.assertEqual(status["registered_job_types"], ["efficiency_analysis"])
        self.assertEqual(status["in_flight"], [])

    def test_statistics_cover_recent_jobs(self) -> None:
        done = self._queue()
        self._queue()
        with self.session_factory() as db:
            claim_job(db, job_id=done, now=T0)
            transition_job(
                db,
                job_id=done,
                from_status="running",
                to_status="completed",
                now=T0 + timedelta(seconds=30),
            )
            stats = self.queue.get_statistics(db)

        self.assertEqual(stats.total_jobs, 2)
        self.assertEqual(stats.pending_jobs, 1)
        self.assertEqual(stats.completed_jobs, 1)
        self.assertEqual(stats.avg_processing_time_seconds, 30.0)


class TruncateErrorTests(TestCase):
    def test_short_messages_are_untouched(self) -> None:
        self.assertEqual(truncate_error("boom", 10), "boom")

    def test_long_messages_are_cut_to_limit(self) -> None:
        truncated = truncate_error("a" * 50, 10)

        self.assertEqual(len(truncated), 10)
        self.assertTrue(truncated.endswith("..."))
