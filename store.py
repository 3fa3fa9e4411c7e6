"""Persistent store for runs, artifacts and scenario status."""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import asdict, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from exceptions import RunNotFoundError
from run_types import ArtifactRecord, RunRecord, RunState, VerdictKind

logger = logging.getLogger("ranger.store")


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RunStore:
    """JSON-file backed store; keeps everything in memory when ``path`` is None."""

    def __init__(self, path: Optional[Path] = None):
        self.path = path
        self._runs: dict[str, RunRecord] = {}
        self._artifacts: dict[str, ArtifactRecord] = {}
        self._scenarios: dict[str, str] = {}
        self._load()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            for run_id, data in raw.get("runs", {}).items():
                self._runs[run_id] = RunRecord(**data)
            for artifact_id, data in raw.get("artifacts", {}).items():
                self._artifacts[artifact_id] = ArtifactRecord(**data)
            self._scenarios.update(raw.get("scenarios", {}))
        except (OSError, ValueError, TypeError) as exc:
            logger.warning(f"Failed to load run store {self.path}: {exc}")

    def _save(self) -> None:
        if self.path is None:
            return
        payload = {
            "runs": {rid: asdict(run) for rid, run in self._runs.items()},
            "artifacts": {aid: asdict(a) for aid, a in self._artifacts.items()},
            "scenarios": self._scenarios,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp_path.replace(self.path)

    # ─────────────────────────────────────────────────────────────────────────
    # Runs
    # ─────────────────────────────────────────────────────────────────────────

    def create_run(
        self,
        run_id: str,
        scenario_id: str,
        profile_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> RunRecord:
        record = RunRecord(
            id=run_id,
            scenario_id=scenario_id,
            profile_id=profile_id,
            state="running",
            started_at=utc_now(),
            notes=notes,
        )
        self._runs[run_id] = record
        self._save()
        return record

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        return self._runs.get(run_id)

    def require_run(self, run_id: str) -> RunRecord:
        record = self._runs.get(run_id)
        if record is None:
            raise RunNotFoundError(run_id)
        return record

    def list_runs(self, scenario_id: Optional[str] = None) -> list[RunRecord]:
        """Runs newest first, optionally only those of one scenario."""
        runs = reversed(self._runs.values())
        if scenario_id is not None:
            return [run for run in runs if run.scenario_id == scenario_id]
        return list(runs)

    def finish_run(
        self,
        run_id: str,
        verdict: VerdictKind,
        summary: str,
        reasoning: Optional[str],
        duration_ms: int,
    ) -> bool:
        """Record the terminal outcome. Returns False if the run already finished."""
        record = self.require_run(run_id)
        if record.is_terminal:
            logger.warning(f"Run {run_id} already finished as {record.state}; ignoring {verdict}")
            return False
        self._runs[run_id] = replace(
            record,
            state=verdict,
            summary=summary,
            reasoning=reasoning,
            duration_ms=duration_ms,
            finished_at=utc_now(),
        )
        self._save()
        return True

    def annotate_error(self, run_id: str, message: str) -> None:
        record = self.require_run(run_id)
        self._runs[run_id] = replace(record, error_msg=message)
        self._save()

    # ─────────────────────────────────────────────────────────────────────────
    # Artifacts
    # ─────────────────────────────────────────────────────────────────────────

    def add_artifact(
        self,
        run_id: str,
        filename: str,
        step_index: Optional[int] = None,
        caption: Optional[str] = None,
        size_bytes: Optional[int] = None,
    ) -> ArtifactRecord:
        artifact = ArtifactRecord(
            id=new_id("art"),
            run_id=run_id,
            filename=filename,
            step_index=step_index,
            caption=caption,
            size_bytes=size_bytes,
            created_at=utc_now(),
        )
        self._artifacts[artifact.id] = artifact
        self._save()
        return artifact

    def get_artifact(self, artifact_id: str) -> Optional[ArtifactRecord]:
        return self._artifacts.get(artifact_id)

    def list_artifacts(self, run_id: str) -> list[ArtifactRecord]:
        artifacts = [a for a in self._artifacts.values() if a.run_id == run_id]
        return sorted(artifacts, key=lambda a: (a.step_index is None, a.step_index or 0, a.created_at))

    # ─────────────────────────────────────────────────────────────────────────
    # Scenarios
    # ─────────────────────────────────────────────────────────────────────────

    def set_scenario_status(self, scenario_id: str, status: RunState) -> None:
        self._scenarios[scenario_id] = status
        self._save()

    def get_scenario_status(self, scenario_id: str) -> Optional[str]:
        return self._scenarios.get(scenario_id)
