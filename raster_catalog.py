from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Tuple
from urllib.parse import urljoin, urlparse

import requests

RASTER_CATALOG_SOURCE = os.getenv("RASTER_CATALOG_SOURCE", "catalog.json")
RASTER_BASE_URL = os.getenv("RASTER_BASE_URL", "")
CATALOG_FETCH_TIMEOUT_SECONDS = float(os.getenv("CATALOG_FETCH_TIMEOUT_SECONDS", "12"))
LOGGER = logging.getLogger("raster_series.raster_catalog")


@dataclass(frozen=True)
class RasterInfo:
    timestamp: str
    variable: str
    raster_url: str
    colorbar_url: str | None = None
    levels: Tuple[float, ...] | None = None

    @property
    def has_colorbar(self) -> bool:
        return bool(self.colorbar_url)


class RasterCatalog:
    """Simulation rasters keyed by domain, timestamp and variable.

    The payload layout is ``{domain: {timestamp: {variable: {"raster": ...,
    "colorbar": ..., "levels": [...]}}}}``. Relative paths are resolved
    against ``base_url``.
    """

    def __init__(self, rasters: Dict[str, Dict[str, Dict[str, Dict[str, object]]]], base_url: str = "") -> None:
        self._rasters = rasters
        self._base_url = base_url

    @classmethod
    def load(cls, source: str = RASTER_CATALOG_SOURCE, base_url: str | None = None) -> "RasterCatalog":
        payload = cls._read_payload(source)
        if not isinstance(payload, dict):
            raise ValueError(f"Catalog {source} is not a JSON object")
        if base_url is None:
            base_url = str(payload.get("raster_base") or RASTER_BASE_URL)
        rasters = payload.get("rasters")
        if rasters is None:
            rasters = {k: v for k, v in payload.items() if k != "raster_base"}
        if not isinstance(rasters, dict):
            raise ValueError(f"Catalog {source} has no rasters mapping")
        LOGGER.info("Loaded raster catalog source=%s domains=%d", source, len(rasters))
        return cls(rasters, base_url=base_url)

    @staticmethod
    def _read_payload(source: str) -> Dict[str, object]:
        if urlparse(source).scheme in ("http", "https"):
            try:
                response = requests.get(source, timeout=CATALOG_FETCH_TIMEOUT_SECONDS)
                response.raise_for_status()
                return response.json()
            except (requests.RequestException, ValueError) as exc:
                raise RuntimeError(f"Failed to fetch raster catalog {source}: {exc}") from exc
        path = Path(source)
        if not path.exists():
            LOGGER.warning("Raster catalog not found path=%s; starting empty", path)
            return {}
        try:
            return json.loads(path.read_text())
        except (json.JSONDecodeError, OSError) as exc:
            raise RuntimeError(f"Failed to read raster catalog {source}: {exc}") from exc

    def domains(self) -> List[str]:
        return sorted(self._rasters.keys())

    def timestamps(self, domain: str) -> List[str]:
        return sorted(self._domain(domain).keys())

    def timestamps_in_range(self, domain: str, start: str, end: str) -> List[str]:
        return [ts for ts in self.timestamps(domain) if start <= ts <= end]

    def variables(self, domain: str) -> List[Dict[str, object]]:
        seen: Dict[str, bool] = {}
        for timestamp in self.timestamps(domain):
            for variable, entry in self._domain(domain)[timestamp].items():
                has_colorbar = isinstance(entry, dict) and bool(entry.get("colorbar"))
                seen[variable] = seen.get(variable, False) or has_colorbar
        return [{"variable": name, "has_colorbar": flag} for name, flag in seen.items()]

    def raster(self, domain: str, timestamp: str, variable: str) -> RasterInfo:
        rasters_at_time = self._domain(domain).get(timestamp)
        if rasters_at_time is None:
            raise KeyError(f"Unknown timestamp {timestamp} for domain {domain}")
        entry = rasters_at_time.get(variable)
        if not isinstance(entry, dict) or not entry.get("raster"):
            raise KeyError(f"No raster {variable} at {timestamp} for domain {domain}")
        colorbar = entry.get("colorbar")
        levels = entry.get("levels")
        return RasterInfo(
            timestamp=timestamp,
            variable=variable,
            raster_url=self.resolve(str(entry["raster"])),
            colorbar_url=self.resolve(str(colorbar)) if colorbar else None,
            levels=tuple(float(v) for v in levels) if levels else None,
        )

    def resolve(self, path: str) -> str:
        if not self._base_url or urlparse(path).scheme:
            return path
        if urlparse(self._base_url).scheme in ("http", "https"):
            return urljoin(self._base_url.rstrip("/") + "/", path.lstrip("/"))
        return str(Path(self._base_url) / path)

    def _domain(self, domain: str) -> Dict[str, Dict[str, Dict[str, object]]]:
        rasters = self._rasters.get(domain)
        if rasters is None:
            raise KeyError(f"Unknown domain: {domain}")
        return rasters
