from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Sequence, Tuple

import numpy as np

LEGEND_BACKGROUND_MAX_SUM = int(os.getenv("LEGEND_BACKGROUND_MAX_SUM", "0"))
LEGEND_TICK_COLUMN_OFFSET = int(os.getenv("LEGEND_TICK_COLUMN_OFFSET", "5"))
LEGEND_TICK_SKIP_ROWS = int(os.getenv("LEGEND_TICK_SKIP_ROWS", "5"))
LEGEND_STRATIFIED_ROW_MARGIN = int(os.getenv("LEGEND_STRATIFIED_ROW_MARGIN", "10"))
BLACK = (0, 0, 0)
LOGGER = logging.getLogger("raster_series.colorbar")


class EmptyLegendError(ValueError):
    """Raised when a legend image has no colored band to calibrate against."""


class PixelColor(NamedTuple):
    r: int
    g: int
    b: int
    a: int = 255

    @property
    def rgb(self) -> Tuple[int, int, int]:
        return (self.r, self.g, self.b)


@dataclass(frozen=True)
class LegendSettings:
    background_max_sum: int = LEGEND_BACKGROUND_MAX_SUM
    tick_column_offset: int = LEGEND_TICK_COLUMN_OFFSET
    tick_skip_rows: int = LEGEND_TICK_SKIP_ROWS
    stratified_row_margin: int = LEGEND_STRATIFIED_ROW_MARGIN


DEFAULT_SETTINGS = LegendSettings()


@dataclass
class CalibrationTable:
    """Color to value mapping derived from one legend image.

    Values hold normalized band positions (1 = top, 0 = bottom) until
    ``interpolate_levels`` replaces them with level values.
    """

    entries: Dict[Tuple[int, int, int], float] = field(default_factory=dict)
    start_row: int = 0
    end_row: int = 0
    band_left_col: int = 0
    band_right_col: int = 0
    decoded: bool = False
    mode: str = "normalized"
    _index: Tuple[np.ndarray, np.ndarray] | None = field(default=None, init=False, repr=False, compare=False)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, rgb: object) -> bool:
        return rgb in self.entries

    @property
    def zero_value(self) -> float:
        return float(self.entries.get(BLACK, 0.0))

    def set_values(self, values: Dict[Tuple[int, int, int], float]) -> None:
        self.entries = dict(values)
        self._index = None

    def color_index(self) -> Tuple[np.ndarray, np.ndarray]:
        # Rebuilt lazily; entries order is preserved so argmin keeps first-minimum ties.
        if self._index is None:
            colors = np.array(list(self.entries.keys()), dtype=np.int32).reshape(-1, 3)
            values = np.array(list(self.entries.values()), dtype=np.float64)
            self._index = (colors, values)
        return self._index

    def describe(self) -> Dict[str, object]:
        values = list(self.entries.values())
        return {
            "entries": len(self.entries),
            "start_row": self.start_row,
            "end_row": self.end_row,
            "band_left_col": self.band_left_col,
            "band_right_col": self.band_right_col,
            "mode": self.mode,
            "decoded": self.decoded,
            "min_value": min(values) if values else None,
            "max_value": max(values) if values else None,
        }


def _is_background(pixel: Sequence[int], settings: LegendSettings) -> bool:
    if len(pixel) > 3 and int(pixel[3]) == 0:
        return True
    return int(pixel[0]) + int(pixel[1]) + int(pixel[2]) <= settings.background_max_sum


def _pixel(image, x: int, y: int) -> PixelColor:
    return PixelColor(*(int(c) for c in image.get_pixel(x, y)))


def _find_band_columns(image, settings: LegendSettings) -> Tuple[int, int]:
    y = image.height // 2
    right = None
    left = 0
    for x in range(image.width - 1, -1, -1):
        background = _is_background(_pixel(image, x, y), settings)
        if right is None:
            if not background:
                right = x
        elif background:
            left = x
            break
    if right is None:
        raise EmptyLegendError(f"No colored band on legend row {y} (size {image.width}x{image.height})")
    return left, right


def scan_legend(image, settings: LegendSettings = DEFAULT_SETTINGS) -> CalibrationTable:
    """Build a calibration table from a legend image.

    The band is located on the middle row, then a single column in the middle
    of the band is read top to bottom so anti-aliased band edges are avoided.
    """
    left, right = _find_band_columns(image, settings)
    x = (left + right) // 2

    rows: Dict[Tuple[int, int, int], int] = {}
    start_row = None
    end_row = None
    for y in range(image.height):
        pixel = _pixel(image, x, y)
        background = _is_background(pixel, settings)
        if start_row is None:
            if background:
                continue
            start_row = y
        elif background:
            end_row = y - 1
            break
        rows[pixel.rgb] = y
    if start_row is None:
        raise EmptyLegendError(f"No colored band in legend column {x}")
    if end_row is None:
        end_row = image.height - 1

    if end_row <= start_row:
        LOGGER.debug("Degenerate legend band start=%d end=%d column=%d", start_row, end_row, x)
        return CalibrationTable(
            entries={BLACK: 0.0},
            start_row=start_row,
            end_row=start_row,
            band_left_col=left,
            band_right_col=right,
        )

    span = float(end_row - start_row)
    entries = {rgb: 1.0 - (row - start_row) / span for rgb, row in rows.items()}
    LOGGER.debug(
        "Scanned legend colors=%d rows=%d..%d band=%d..%d",
        len(entries),
        start_row,
        end_row,
        left,
        right,
    )
    return CalibrationTable(
        entries=entries,
        start_row=start_row,
        end_row=end_row,
        band_left_col=left,
        band_right_col=right,
    )


def _position_for_row(table: CalibrationTable, row: int) -> float:
    span = max(1, table.end_row - table.start_row)
    return 1.0 - (row - table.start_row) / float(span)


def find_level_ticks(
    image,
    table: CalibrationTable,
    levels: Sequence[float],
    settings: LegendSettings = DEFAULT_SETTINGS,
) -> List[Tuple[float, float]]:
    """Return (position, level) pairs for tick marks left of the band, top first."""
    x = table.band_left_col - settings.tick_column_offset
    if x < 0 or x >= image.width or not levels:
        return []
    ticks: List[Tuple[float, float]] = []
    level_index = len(levels) - 1
    y = 0
    while y < image.height and level_index >= 0:
        if _pixel(image, x, y).a != 0:
            ticks.append((_position_for_row(table, y), float(levels[level_index])))
            level_index -= 1
            y += settings.tick_skip_rows
        y += 1
    return ticks


def is_stratified(table: CalibrationTable, levels: Sequence[float], settings: LegendSettings = DEFAULT_SETTINGS) -> bool:
    return len(table) - settings.stratified_row_margin < len(levels)


def interpolate_levels(
    table: CalibrationTable,
    levels: Sequence[float] | None,
    image,
    settings: LegendSettings = DEFAULT_SETTINGS,
) -> CalibrationTable:
    """Replace normalized positions in ``table`` with level values, in place.

    Legends with about as many colors as levels are treated as stratified and
    snap to the nearest tick; smooth gradients are mapped through the line
    defined by the first two ticks.
    """
    if not levels:
        return table
    ticks = find_level_ticks(image, table, levels, settings)
    if not ticks:
        LOGGER.debug("No level ticks found; keeping normalized positions")
        return table

    if is_stratified(table, levels, settings):
        values = {rgb: _nearest_tick_value(ticks, position) for rgb, position in table.entries.items()}
        table.mode = "stratified"
    else:
        if len(ticks) < 2:
            LOGGER.debug("Only one level tick on continuous legend; keeping normalized positions")
            return table
        (p1, v1), (p2, v2) = ticks[0], ticks[1]
        if math.isclose(p1, p2):
            return table
        slope = (v2 - v1) / (p2 - p1)
        values = {rgb: slope * (position - p1) + v1 for rgb, position in table.entries.items()}
        table.mode = "continuous"

    table.set_values(values)
    table.decoded = True
    return table


def _nearest_tick_value(ticks: List[Tuple[float, float]], position: float) -> float:
    best_value = ticks[0][1]
    best_distance = math.inf
    for tick_position, level in ticks:
        distance = abs(tick_position - position)
        if distance < best_distance:
            best_distance = distance
            best_value = level
    return best_value


def calibrate(
    image,
    levels: Sequence[float] | None = None,
    settings: LegendSettings = DEFAULT_SETTINGS,
) -> CalibrationTable:
    table = scan_legend(image, settings)
    return interpolate_levels(table, levels, image, settings)


def decode_color(table: CalibrationTable, color: Sequence[int]) -> float:
    rgb = (int(color[0]), int(color[1]), int(color[2]))
    if rgb == BLACK:
        return table.zero_value
    exact = table.entries.get(rgb)
    if exact is not None:
        return float(exact)
    if not table.entries:
        return 0.0
    colors, values = table.color_index()
    distances = np.abs(colors - np.array(rgb, dtype=np.int32)).sum(axis=1)
    return float(values[int(np.argmin(distances))])
