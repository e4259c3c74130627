"""File-based persistence for optimized route runs."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..config import settings
from ..models.monitoring import RouteOptimizationResult
from ..services.outputs.route_formatter import optimization_result_to_json, waypoints_to_csv


class FileStorage:
    """Thin wrapper around the data root for storing route summaries and waypoint CSVs."""

    def __init__(self, root: Path | None = None) -> None:
        self.root = (root or settings.data_root).resolve()
        self.output_root = self.root / "outputs"
        self.output_root.mkdir(parents=True, exist_ok=True)

    def make_run_directory(self, prefix: str = "route") -> Path:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        path = self.output_root / f"{prefix}_{timestamp}_{uuid.uuid4().hex[:8]}"
        path.mkdir(parents=True, exist_ok=False)
        return path

    def write_json(self, path: Path, data: Any, *, indent: int = 2) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, ensure_ascii=False, indent=indent, default=str)

    def write_csv(self, path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8", newline="") as handle:
            handle.write(content)

    def write_run(self, result: RouteOptimizationResult) -> Path:
        """Write ``summary.json`` and ``waypoints.csv`` for one solve into a fresh run directory."""
        run_dir = self.make_run_directory(prefix=f"route_{result.batch_id}")
        self.write_json(run_dir / "summary.json", optimization_result_to_json(result))
        self.write_csv(run_dir / "waypoints.csv", waypoints_to_csv(result.optimized_route))
        return run_dir
