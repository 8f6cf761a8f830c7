"""Run report generation service."""

import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class RunReportService:
    """Collects execution metadata and writes the run report JSON."""

    def __init__(self, report_file: Optional[str], logger):
        self.report_file = report_file
        self.logger = logger
        self.report: Dict[str, Any] = {
            "run_id": None,
            "mode": None,
            "status": "running",
            "started_at": None,
            "finished_at": None,
            "duration_seconds": None,
            "parameters": {},
            "config": {},
            "artifact": None,
            "stages": [],
            "health": None,
            "rollback_attempted": False,
            "error_kind": None,
            "error": None,
        }

    def start_run(self, run_id: str, mode: str, parameters: Dict[str, Any]):
        self.report["run_id"] = run_id
        self.report["mode"] = mode
        self.report["status"] = "running"
        self.report["started_at"] = self._now()
        self.report["parameters"] = parameters
        self.write()

    def set_value(self, key: str, value: Any):
        self.report[key] = value
        self.write()

    def stage_started(self, stage_name: str):
        self.report["stages"].append(
            {
                "name": stage_name,
                "status": "running",
                "started_at": self._now(),
                "finished_at": None,
                "duration_seconds": None,
                "details": {},
                "error": None,
            }
        )
        self.write()

    def stage_finished(
        self,
        stage_name: str,
        status: str,
        details: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> float:
        duration = 0.0
        for stage in reversed(self.report["stages"]):
            if stage["name"] == stage_name and stage["status"] == "running":
                stage["status"] = status
                stage["finished_at"] = self._now()
                stage["error"] = error
                if details:
                    stage["details"].update(details)
                started_at = datetime.fromisoformat(stage["started_at"])
                finished_at = datetime.fromisoformat(stage["finished_at"])
                duration = (finished_at - started_at).total_seconds()
                stage["duration_seconds"] = duration
                break
        else:
            self.report["stages"].append(
                {
                    "name": stage_name,
                    "status": status,
                    "started_at": None,
                    "finished_at": self._now(),
                    "duration_seconds": 0.0,
                    "details": details or {},
                    "error": error,
                }
            )
        self.write()
        return duration

    def finalize(self, status: str, error: Optional[str] = None):
        self.report["status"] = status
        self.report["finished_at"] = self._now()
        if self.report.get("started_at"):
            started_at = datetime.fromisoformat(self.report["started_at"])
            finished_at = datetime.fromisoformat(self.report["finished_at"])
            self.report["duration_seconds"] = (finished_at - started_at).total_seconds()
        self.report["error"] = error
        self.write()

    def write(self):
        if not self.report_file:
            return

        directory = os.path.dirname(self.report_file) or "."
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError as exc:
            self.logger.warning("Could not create report directory '%s': %s", directory, exc)
            return

        temp_path = None
        try:
            fd, temp_path = tempfile.mkstemp(prefix="run-report-", suffix=".json", dir=directory)
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                json.dump(self.report, file_obj, indent=2, sort_keys=True, default=str)
                file_obj.write("\n")
            os.replace(temp_path, self.report_file)
        except OSError as exc:
            self.logger.warning("Could not write run report '%s': %s", self.report_file, exc)
            if temp_path is not None:
                try:
                    os.remove(temp_path)
                except OSError:
                    pass

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()
