import threading
import time
import unittest
from unittest.mock import patch

from image_store import CancelledError
from timeseries import TimeSeriesResult

try:
    import app as app_module
except ModuleNotFoundError:
    app_module = None


class _FakeEngine:
    domain = "1"

    def __init__(self) -> None:
        self.requests = []

    def generate(self, request, progress=None):
        self.requests.append(request)
        if progress is not None:
            progress(0.5)
            progress(1.0)
        return TimeSeriesResult(
            variable=request.variable,
            timestamps=("t1", "t2"),
            values=tuple((1.0, None) for _ in request.points),
            labels=tuple(p.label for p in request.points),
            errors=({"timestamp": "t2", "message": "HTTP 404"},),
        )


class _CancelledEngine(_FakeEngine):
    def generate(self, request, progress=None):
        raise CancelledError("Active domain changed during series generation")


class _BlockingEngine(_FakeEngine):
    def __init__(self) -> None:
        super().__init__()
        self.release = threading.Event()

    def generate(self, request, progress=None):
        self.release.wait(5.0)
        return super().generate(request, progress)


class _NoDomainEngine(_FakeEngine):
    domain = None


def _wait_for_status(job_id, statuses=("done", "error", "cancelled"), timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        payload = app_module.timeseries_status(job_id=job_id)
        if payload["status"] in statuses:
            return payload
        time.sleep(0.01)
    return app_module.timeseries_status(job_id=job_id)


@unittest.skipIf(app_module is None, "fastapi app dependencies not available in current interpreter")
class ApiSeriesTests(unittest.TestCase):
    def setUp(self):
        if app_module is not None:
            app_module._JOBS.clear()

    def test_series_job_completes_with_payload(self):
        fake_engine = _FakeEngine()
        with patch.object(app_module, "engine", fake_engine):
            started = app_module.timeseries_start(
                variable="T2",
                start="t1",
                end="t2",
                points="0.25,0.5,north;0.75,0.5",
            )
            payload = _wait_for_status(started["job_id"])

        self.assertEqual(payload["status"], "done")
        self.assertEqual(payload["progress"], 1.0)
        result = payload["result"]
        self.assertEqual(result["timestamps"], ["t1", "t2"])
        self.assertEqual([s["label"] for s in result["series"]], ["north", "point 2"])
        self.assertEqual(result["series"][0]["values"], [1.0, None])
        self.assertEqual(result["diagnostics"]["error_count"], 1)
        self.assertEqual(fake_engine.requests[0].points[0].x, 0.25)

    def test_cancelled_job_reports_no_result(self):
        with patch.object(app_module, "engine", _CancelledEngine()):
            started = app_module.timeseries_start(variable="T2", start="t1", end="t2", points="0.5,0.5")
            payload = _wait_for_status(started["job_id"])
        self.assertEqual(payload["status"], "cancelled")
        self.assertIsNone(payload["result"])

    def test_job_cancelled_by_domain_switch_never_reports_result(self):
        blocking_engine = _BlockingEngine()
        with patch.object(app_module, "engine", blocking_engine):
            started = app_module.timeseries_start(variable="T2", start="t1", end="t2", points="0.5,0.5")
            app_module._cancel_running_jobs()
            blocking_engine.release.set()
            time.sleep(0.1)
            payload = app_module.timeseries_status(job_id=started["job_id"])
        self.assertEqual(payload["status"], "cancelled")
        self.assertIsNone(payload["result"])

    def test_rejects_malformed_points(self):
        with patch.object(app_module, "engine", _FakeEngine()):
            for points in ("", "0.5", "0.5,abc", "1.5,0.5"):
                with self.assertRaises(app_module.HTTPException) as ctx:
                    app_module.timeseries_start(variable="T2", start="t1", end="t2", points=points)
                self.assertEqual(ctx.exception.status_code, 400)

    def test_rejects_inverted_range(self):
        with patch.object(app_module, "engine", _FakeEngine()):
            with self.assertRaises(app_module.HTTPException) as ctx:
                app_module.timeseries_start(variable="T2", start="t3", end="t1", points="0.5,0.5")
        self.assertEqual(ctx.exception.status_code, 400)

    def test_requires_active_domain(self):
        with patch.object(app_module, "engine", _NoDomainEngine()):
            with self.assertRaises(app_module.HTTPException) as ctx:
                app_module.timeseries_start(variable="T2", start="t1", end="t2", points="0.5,0.5")
        self.assertEqual(ctx.exception.status_code, 400)

    def test_unknown_job_returns_404(self):
        with self.assertRaises(app_module.HTTPException) as ctx:
            app_module.timeseries_status(job_id="missing")
        self.assertEqual(ctx.exception.status_code, 404)

    def test_finished_jobs_are_pruned(self):
        with patch.object(app_module, "TIMESERIES_JOB_MAX_ENTRIES", 2):
            for i in range(5):
                app_module._JOBS[f"j{i}"] = {"job_id": f"j{i}", "status": "done", "started_at": float(i)}
            app_module._JOBS["live"] = {"job_id": "live", "status": "running", "started_at": 0.0}
            app_module._prune_jobs()
        self.assertIn("live", app_module._JOBS)
        self.assertEqual(sorted(app_module._JOBS.keys()), ["j4", "live"])


if __name__ == "__main__":
    unittest.main()
