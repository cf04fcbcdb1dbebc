"""Output directory, console log, and metadata for one analysis run.

Layout under the results root:

    results/01_visit_reduction/
        README.md                  primer, rewritten on every run
        latest -> 261018.1         last run that finished without raising
        261018/                    first run of the day
        261018.1/                  second run
            data/*.parquet         save_parquet()
            *.json                 save_json()
            run_log.txt            everything printed during the run
            run_info.json          timing, git commit, params, failure
            01_visit_reduction_report.html

    with RunContext("01_visit_reduction", params=vars(args), primer=PRIMER) as ctx:
        ctx.save_parquet(diagnostics, "fit_diagnostics")
"""

from __future__ import annotations

import io
import json
import subprocess
import sys
from datetime import datetime
from pathlib import Path
from types import TracebackType
from typing import TextIO
from zoneinfo import ZoneInfo

import polars as pl

try:
    from analysis.report import ReportBuilder
except ModuleNotFoundError:
    from report import ReportBuilder  # type: ignore[no-redef]

from wetflux.config import PACKAGE_VERSION

_TZ = ZoneInfo("UTC")

STUDY_NAME = "Wetland GHG Visit Reduction"


class _TeeStream:
    """Console stream that also keeps a copy of everything written."""

    def __init__(self, original: io.TextIOBase) -> None:
        self._original = original
        self._buffer = io.StringIO()

    def write(self, data: str) -> int:
        self._original.write(data)
        self._buffer.write(data)
        return len(data)

    def flush(self) -> None:
        self._original.flush()

    def getvalue(self) -> str:
        return self._buffer.getvalue()


def _git_commit_hash() -> str:
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return "unknown"
    return result.stdout.strip() if result.returncode == 0 else "unknown"


def _format_elapsed(seconds: float) -> str:
    """3.2s, 1m 45s, 1h 12m 5s."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m {secs}s"


def _next_run_label(analysis_dir: Path, today: str) -> str:
    """today, then today.1, today.2, ... for repeat runs on the same date.

    A symlink named like today (not a real run directory) does not count.
    """
    first = analysis_dir / today
    if not first.exists() or first.is_symlink():
        return today
    n = 1
    while (analysis_dir / f"{today}.{n}").exists():
        n += 1
    return f"{today}.{n}"


class RunContext:
    """Sets up a run directory on enter; writes log, metadata, and report on exit.

    Attributes:
        analysis_name: Phase directory name, e.g. "01_visit_reduction".
        params: Recorded verbatim in run_info.json.
        run_dir: results/<analysis>/<run label>/.
        data_dir: run_dir/data, where save_parquet() writes.
        report: ReportBuilder written to <analysis>_report.html if non-empty.
    """

    def __init__(
        self,
        analysis_name: str,
        params: dict | None = None,
        results_root: Path | None = None,
        primer: str | None = None,
    ) -> None:
        self.analysis_name = analysis_name
        self.params = params or {}

        self._today = datetime.now(_TZ).strftime("%y%m%d")
        self._analysis_dir = (results_root or Path("results")) / analysis_name
        self._run_label = _next_run_label(self._analysis_dir, self._today)
        self.run_dir = self._analysis_dir / self._run_label
        self.data_dir = self.run_dir / "data"

        self._primer = primer
        self._tee: _TeeStream | None = None
        self._original_stdout: TextIO | None = None
        self._start_time: datetime | None = None
        self._error: str | None = None

        self.report = ReportBuilder(
            title=f"{analysis_name.upper()} Report",
            study=STUDY_NAME,
        )

    def __enter__(self) -> RunContext:
        self.setup()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_type is not None:
            self._error = f"{exc_type.__name__}: {exc_val}"
        self.finalize(failed=exc_type is not None)

    def setup(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        if self._primer:
            (self._analysis_dir / "README.md").write_text(self._primer, encoding="utf-8")

        self._original_stdout = sys.stdout
        self._tee = _TeeStream(sys.stdout)
        sys.stdout = self._tee  # type: ignore[assignment]
        self._start_time = datetime.now(_TZ)

    def save_parquet(self, df: pl.DataFrame, name: str) -> Path:
        path = self.data_dir / f"{name}.parquet"
        df.write_parquet(path)
        print(f"  Saved: {path.name} ({df.height} rows)")
        return path

    def save_json(self, payload: dict, name: str) -> Path:
        path = self.run_dir / f"{name}.json"
        with open(path, "w") as f:
            json.dump(payload, f, indent=2, default=str)
        print(f"  Saved: {path.name}")
        return path

    def finalize(self, *, failed: bool = False) -> None:
        """Restore stdout, then write run_log.txt, run_info.json, and the report.

        `latest` moves only when the run did not fail.
        """
        log_text = self._tee.getvalue() if self._tee is not None else ""
        if self._original_stdout is not None:
            sys.stdout = self._original_stdout  # type: ignore[assignment]
        (self.run_dir / "run_log.txt").write_text(log_text, encoding="utf-8")

        end_time = datetime.now(_TZ)
        elapsed = (end_time - self._start_time).total_seconds() if self._start_time else 0.0
        run_info = {
            "analysis": self.analysis_name,
            "run_date": self._today,
            "run_label": self._run_label,
            "failed": failed,
            "error": self._error,
            "timestamp_start": self._start_time.isoformat() if self._start_time else None,
            "timestamp_end": end_time.isoformat(),
            "elapsed_seconds": round(elapsed, 1),
            "elapsed_display": _format_elapsed(elapsed),
            "git_commit": _git_commit_hash(),
            "package_version": PACKAGE_VERSION,
            "python_version": sys.version,
            "params": self.params,
        }
        with open(self.run_dir / "run_info.json", "w") as f:
            json.dump(run_info, f, indent=2, default=str)

        status = "FAILED after" if failed else "completed in"
        print(f"\n{self.analysis_name.upper()} {status} {run_info['elapsed_display']}")

        if self.report.has_sections:
            self.report.git_hash = run_info["git_commit"]
            self.report.write(self.run_dir / f"{self.analysis_name}_report.html")

        if not failed:
            latest = self._analysis_dir / "latest"
            if latest.is_symlink() or latest.exists():
                latest.unlink()
            latest.symlink_to(self._run_label)
