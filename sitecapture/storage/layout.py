"""Path helpers for the job database, crawl output, artifacts and metrics."""
from __future__ import annotations

from pathlib import Path
from typing import Mapping


class DataLayout:
    """Computes and creates the working directories inside the data root."""

    def __init__(
        self,
        *,
        database: Path,
        crawl_output: Path,
        artifacts: Path,
        metrics: Path,
    ) -> None:
        self.database = database
        self.crawl_output = crawl_output
        self.artifacts = artifacts
        self.metrics = metrics
        for path in (database.parent, crawl_output, artifacts, metrics):
            path.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_settings(cls, settings: Mapping[str, object]) -> "DataLayout":
        app = dict(settings.get("app", {}) or {})
        crawler = dict(settings.get("crawler", {}) or {})
        data_root = Path(str(app.get("data_root", "data")))
        return cls(
            database=Path(str(app.get("database", data_root / "jobs.db"))),
            crawl_output=Path(str(crawler.get("output_dir", data_root / "crawls"))),
            artifacts=Path(str(app.get("artifacts_dir", data_root / "artifacts"))),
            metrics=Path(str(app.get("metrics_dir", data_root / "metrics"))),
        )
