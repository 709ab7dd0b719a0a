import logging
import tempfile
import unittest
from logging.handlers import RotatingFileHandler
from pathlib import Path
from unittest.mock import patch

from image_store import ImageLoadError
from raster_catalog import RasterCatalog

try:
    import app as app_module
except ModuleNotFoundError:
    app_module = None


_CATALOG = RasterCatalog(
    {
        "1": {
            "2020-10-15 17:00:00": {"T2": {"raster": "a.png", "colorbar": "cb.png"}},
            "2020-10-15 18:00:00": {"T2": {"raster": "b.png", "colorbar": "cb.png"}},
        }
    }
)


class _FakeEngine:
    catalog = _CATALOG

    def __init__(self) -> None:
        self.domain = "1"
        self.prefetch_calls = []

    def switch_domain(self, domain):
        if domain not in self.catalog.domains():
            raise KeyError(f"Unknown domain: {domain}")
        self.domain = domain

    def prefetch_variable(self, variable, start, end):
        self.prefetch_calls.append((variable, start, end))
        return ["a.png", "cb.png", "b.png"]

    def sample(self, timestamp, variable, points):
        return [{"label": p.label, "x": p.x, "y": p.y, "rgb": [1, 2, 3], "value": 12.3456} for p in points]


class _LoadFailEngine(_FakeEngine):
    def sample(self, timestamp, variable, points):
        raise ImageLoadError("HTTP 502 for a.png")


class _UnknownTimestampEngine(_FakeEngine):
    def sample(self, timestamp, variable, points):
        raise KeyError(f"Unknown timestamp {timestamp} for domain 1")


@unittest.skipIf(app_module is None, "fastapi dependencies not available")
class ApiEndpointTests(unittest.TestCase):
    def test_metadata_lists_domains_and_variables(self):
        with patch.object(app_module, "engine", _FakeEngine()):
            payload = app_module.metadata()
        self.assertEqual(payload["active_domain"], "1")
        self.assertEqual(len(payload["domains"]), 1)
        domain = payload["domains"][0]
        self.assertEqual(domain["timestamps"], ["2020-10-15 17:00:00", "2020-10-15 18:00:00"])
        self.assertEqual(domain["variables"], [{"variable": "T2", "has_colorbar": True}])

    def test_select_unknown_domain_returns_404(self):
        with patch.object(app_module, "engine", _FakeEngine()):
            with self.assertRaises(app_module.HTTPException) as ctx:
                app_module.select_domain(domain="42")
        self.assertEqual(ctx.exception.status_code, 404)

    def test_select_domain_cancels_running_jobs(self):
        fake_engine = _FakeEngine()
        with patch.dict(app_module._JOBS, {"j1": {"job_id": "j1", "status": "running", "result": None}}, clear=True):
            with patch.object(app_module, "engine", fake_engine):
                payload = app_module.select_domain(domain="1")
            self.assertEqual(app_module._JOBS["j1"]["status"], "cancelled")
        self.assertEqual(payload, {"ok": True, "active_domain": "1"})

    def test_prefetch_endpoint_returns_queue_count(self):
        fake_engine = _FakeEngine()
        with patch.object(app_module, "engine", fake_engine):
            payload = app_module.prefetch(variable="T2", start="2020-10-15 17:00:00", end="2020-10-15 17:00:00")
        self.assertEqual(payload, {"ok": True, "queued": 3})
        self.assertEqual(fake_engine.prefetch_calls, [("T2", "2020-10-15 17:00:00", "2020-10-15 17:00:00")])

    def test_value_endpoint_rounds_decoded_value(self):
        with patch.object(app_module, "engine", _FakeEngine()):
            payload = app_module.value(timestamp="2020-10-15 17:00:00", variable="T2", x=0.5, y=0.25)
        self.assertEqual(payload["value"], 12.35)
        self.assertEqual(payload["rgb"], [1, 2, 3])
        self.assertEqual(payload["domain"], "1")

    def test_value_endpoint_returns_503_on_load_failure(self):
        with patch.object(app_module, "engine", _LoadFailEngine()):
            with self.assertRaises(app_module.HTTPException) as ctx:
                app_module.value(timestamp="2020-10-15 17:00:00", variable="T2", x=0.5, y=0.5)
        self.assertEqual(ctx.exception.status_code, 503)

    def test_value_endpoint_returns_404_for_unknown_timestamp(self):
        with patch.object(app_module, "engine", _UnknownTimestampEngine()):
            with self.assertRaises(app_module.HTTPException) as ctx:
                app_module.value(timestamp="1999-01-01 00:00:00", variable="T2", x=0.5, y=0.5)
        self.assertEqual(ctx.exception.status_code, 404)

    def test_health(self):
        self.assertEqual(app_module.health(), {"status": "ok"})


@unittest.skipIf(app_module is None, "fastapi dependencies not available")
class AppSetupTests(unittest.TestCase):
    def test_cors_origins_are_trimmed_and_wildcard_wins(self):
        self.assertEqual(
            app_module._cors_origins(" http://localhost:8000/ ,,https://viewer.example.org"),
            ["http://localhost:8000", "https://viewer.example.org"],
        )
        self.assertEqual(app_module._cors_origins("http://localhost:8000,*"), ["*"])
        self.assertEqual(app_module._cors_origins(""), [])

    def test_logging_writes_rotating_file_once(self):
        with tempfile.TemporaryDirectory() as tmp:
            log_file = Path(tmp) / "nested" / "series.log"
            logger = app_module._configure_logging("raster_series_setup_test", "DEBUG", str(log_file))
            try:
                again = app_module._configure_logging("raster_series_setup_test", "DEBUG", str(log_file))
                self.assertIs(again, logger)
                self.assertEqual(len(logger.handlers), 2)
                self.assertTrue(any(isinstance(h, RotatingFileHandler) for h in logger.handlers))
                self.assertEqual(logger.level, logging.DEBUG)
                self.assertFalse(logger.propagate)
                self.assertTrue(log_file.exists())
            finally:
                for handler in list(logger.handlers):
                    handler.close()
                    logger.removeHandler(handler)


if __name__ == "__main__":
    unittest.main()
