from __future__ import annotations

from concurrent.futures import CancelledError as FutureCancelledError
from concurrent.futures import wait
import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Sequence, Tuple

from colorbar import DEFAULT_SETTINGS, CalibrationTable, EmptyLegendError, LegendSettings, calibrate, decode_color
from image_store import CancelledError, ImageHandle, ImageLoadError, PrefetchScheduler
from raster_catalog import RasterCatalog, RasterInfo

LOGGER = logging.getLogger("raster_series.timeseries")

ProgressCallback = Callable[[float], None]


@dataclass(frozen=True)
class SamplePoint:
    x: float
    y: float
    label: str = ""

    def __post_init__(self) -> None:
        for name, coord in (("x", self.x), ("y", self.y)):
            if not (0.0 <= float(coord) <= 1.0):
                raise ValueError(f"Sample point {name}={coord} outside [0, 1]")

    def to_pixel(self, width: int, height: int) -> Tuple[int, int]:
        x = min(int(math.floor(self.x * width)), width - 1)
        y = min(int(math.floor(self.y * height)), height - 1)
        return x, y


@dataclass(frozen=True)
class TimeSeriesRequest:
    start: str
    end: str
    points: Tuple[SamplePoint, ...]
    variable: str

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"Range start {self.start} is after end {self.end}")
        if not self.points:
            raise ValueError("At least one sample point is required")
        object.__setattr__(self, "points", tuple(self.points))


@dataclass(frozen=True)
class TimeSeriesResult:
    variable: str
    timestamps: Tuple[str, ...]
    values: Tuple[Tuple[float | None, ...], ...]
    labels: Tuple[str, ...] = ()
    errors: Tuple[Dict[str, object], ...] = field(default=())

    def series(self, point_index: int) -> Dict[str, float | None]:
        return dict(zip(self.timestamps, self.values[point_index]))

    def to_payload(self) -> Dict[str, object]:
        return {
            "variable": self.variable,
            "timestamps": list(self.timestamps),
            "series": [
                {"label": label, "values": list(values)}
                for label, values in zip(self.labels, self.values)
            ],
            "diagnostics": {
                "missing_counts": [sum(1 for v in values if v is None) for values in self.values],
                "errors": list(self.errors[:25]),
                "error_count": len(self.errors),
            },
        }


class TimeSeriesEngine:
    """Decode raster colors at fixed image points across a time range."""

    def __init__(
        self,
        catalog: RasterCatalog,
        scheduler: PrefetchScheduler | None = None,
        settings: LegendSettings = DEFAULT_SETTINGS,
    ) -> None:
        self._catalog = catalog
        self._scheduler = scheduler if scheduler is not None else PrefetchScheduler()
        self._settings = settings
        self._calibrations: Dict[str, Tuple[int, str, CalibrationTable]] = {}
        self._calibration_guard = threading.Lock()

    @property
    def catalog(self) -> RasterCatalog:
        return self._catalog

    @property
    def scheduler(self) -> PrefetchScheduler:
        return self._scheduler

    @property
    def domain(self) -> str | None:
        return self._scheduler.domain

    def switch_domain(self, domain: str) -> None:
        if domain not in self._catalog.domains():
            raise KeyError(f"Unknown domain: {domain}")
        self._scheduler.switch_domain(domain)
        with self._calibration_guard:
            self._calibrations.clear()

    def shutdown(self) -> None:
        self._scheduler.shutdown()

    def prefetch_variable(self, variable: str, window_start: str, window_end: str) -> List[str]:
        domain = self._require_domain()
        entries: List[Tuple[str, str]] = []
        for timestamp in self._catalog.timestamps(domain):
            try:
                info = self._catalog.raster(domain, timestamp, variable)
            except KeyError:
                continue
            entries.append((timestamp, info.raster_url))
            if info.colorbar_url:
                entries.append((timestamp, info.colorbar_url))
        return self._scheduler.prefetch(entries, window=(window_start, window_end))

    def sample(self, timestamp: str, variable: str, points: Sequence[SamplePoint]) -> List[Dict[str, object]]:
        domain = self._require_domain()
        info = self._series_raster(domain, timestamp, variable)
        image, legend = self._load_pair(info)
        table = self.calibration(info, legend)
        out: List[Dict[str, object]] = []
        for point in points:
            x, y = point.to_pixel(image.width, image.height)
            color = image.get_pixel(x, y)
            out.append(
                {
                    "label": point.label,
                    "x": point.x,
                    "y": point.y,
                    "rgb": list(color.rgb),
                    "value": decode_color(table, color),
                }
            )
        return out

    def generate(self, request: TimeSeriesRequest, progress: ProgressCallback | None = None) -> TimeSeriesResult:
        domain = self._require_domain()
        generation = self._scheduler.generation
        timestamps = self._catalog.timestamps_in_range(domain, request.start, request.end)
        total = len(timestamps)
        values: List[List[float | None]] = [[] for _ in request.points]
        errors: List[Dict[str, object]] = []
        LOGGER.info(
            "Generating series domain=%s variable=%s timestamps=%d points=%d",
            domain,
            request.variable,
            total,
            len(request.points),
        )

        for index, timestamp in enumerate(timestamps):
            self._check_generation(generation)
            try:
                info = self._series_raster(domain, timestamp, request.variable)
                image, legend = self._load_pair(info)
            except (ImageLoadError, KeyError, ValueError) as exc:
                LOGGER.warning("Series sample missing timestamp=%s variable=%s: %s", timestamp, request.variable, exc)
                for point_values in values:
                    point_values.append(None)
                errors.append({"timestamp": timestamp, "message": str(exc)})
            else:
                table = self.calibration(info, legend, errors)
                for point, point_values in zip(request.points, values):
                    x, y = point.to_pixel(image.width, image.height)
                    point_values.append(decode_color(table, image.get_pixel(x, y)))
            if progress is not None:
                progress((index + 1) / total)

        self._check_generation(generation)
        if progress is not None and total == 0:
            progress(1.0)
        return TimeSeriesResult(
            variable=request.variable,
            timestamps=tuple(timestamps),
            values=tuple(tuple(v) for v in values),
            labels=tuple(p.label or f"point {i + 1}" for i, p in enumerate(request.points)),
            errors=tuple(errors),
        )

    def calibration(
        self,
        info: RasterInfo,
        legend: ImageHandle,
        errors: List[Dict[str, object]] | None = None,
    ) -> CalibrationTable:
        generation = self._scheduler.generation
        with self._calibration_guard:
            cached = self._calibrations.get(info.variable)
            if cached is not None and cached[:2] == (generation, info.colorbar_url):
                return cached[2]
        try:
            table = calibrate(legend, info.levels, self._settings)
        except EmptyLegendError as exc:
            LOGGER.warning("Legend for %s has no colored band url=%s: %s", info.variable, info.colorbar_url, exc)
            if errors is not None:
                errors.append({"timestamp": info.timestamp, "message": str(exc)})
            table = CalibrationTable()
        with self._calibration_guard:
            # Tables calibrated across a domain switch are not kept.
            if generation != self._scheduler.generation:
                return table
            self._calibrations[info.variable] = (generation, str(info.colorbar_url), table)
        LOGGER.debug("Calibrated variable=%s %s", info.variable, table.describe())
        return table

    def _load_pair(self, info: RasterInfo) -> Tuple[ImageHandle, ImageHandle]:
        image_future = self._scheduler.request(info.raster_url)
        legend_future = self._scheduler.request(str(info.colorbar_url))
        wait([image_future, legend_future])
        try:
            return image_future.result(), legend_future.result()
        except FutureCancelledError as exc:
            raise CancelledError(f"Loads for {info.timestamp} cancelled by domain switch") from exc

    def _series_raster(self, domain: str, timestamp: str, variable: str) -> RasterInfo:
        info = self._catalog.raster(domain, timestamp, variable)
        if not info.has_colorbar:
            raise ValueError(f"Raster {variable} at {timestamp} has no colorbar")
        return info

    def _check_generation(self, generation: int) -> None:
        if self._scheduler.generation != generation:
            LOGGER.info("Series generation cancelled by domain switch")
            raise CancelledError("Active domain changed during series generation")

    def _require_domain(self) -> str:
        domain = self._scheduler.domain
        if domain is None:
            raise ValueError("No active domain selected")
        return domain
