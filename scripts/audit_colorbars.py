#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json

from colorbar import EmptyLegendError, calibrate
from image_store import ImageLoadError, fetch_image
from raster_catalog import RASTER_CATALOG_SOURCE, RasterCatalog


def main() -> None:
    parser = argparse.ArgumentParser(description="Calibrate every colorbar of a catalog domain.")
    parser.add_argument("--catalog", default=RASTER_CATALOG_SOURCE)
    parser.add_argument("--domain", default=None)
    args = parser.parse_args()

    catalog = RasterCatalog.load(args.catalog)
    domains = [args.domain] if args.domain else catalog.domains()

    rows = []
    for domain in domains:
        seen: set[str] = set()
        for timestamp in catalog.timestamps(domain):
            for entry in catalog.variables(domain):
                if not entry["has_colorbar"]:
                    continue
                try:
                    info = catalog.raster(domain, timestamp, str(entry["variable"]))
                except KeyError:
                    continue
                if not info.colorbar_url or info.colorbar_url in seen:
                    continue
                seen.add(info.colorbar_url)
                row = {"domain": domain, "variable": info.variable, "colorbar": info.colorbar_url}
                try:
                    table = calibrate(fetch_image(info.colorbar_url), info.levels)
                    row.update(status="ok", **table.describe())
                except (EmptyLegendError, ImageLoadError) as exc:  # pragma: no cover - diagnostics script
                    row.update(status="failed", error=f"{type(exc).__name__}: {exc}")
                rows.append(row)

    failed = [r for r in rows if r.get("status") != "ok"]
    print(f"total={len(rows)} failed={len(failed)}")
    for row in rows:
        print(json.dumps(row, ensure_ascii=False))


if __name__ == "__main__":
    main()
