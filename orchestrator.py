"""Run orchestrator: launches execution units and routes their events.

Each run executes in its own worker process. The orchestrator pumps the
unit's channel, persists what needs persisting and fans events out on the
bus. A unit that exits without a verdict gets one synthesized for it.
"""
from __future__ import annotations

import asyncio
import logging
import os
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional

from config import RangerConfig
from event_bus import EventBus
from events import (
    ErrorEvent,
    StartMessage,
    StepEvent,
    ThinkEvent,
    VerdictEvent,
    decode_worker_message,
    encode_message,
)
from exceptions import ChannelError, MessageDecodeError
from run_types import RunConfig, ScenarioRef, VerifyRequest, Viewport
from store import RunStore, new_id

PROJECT_ROOT = Path(__file__).resolve().parent
WORKER_MODULE = "worker"


def artifact_file_url(artifact_id: str) -> str:
    return f"/api/artifacts/{artifact_id}/file"


# ─────────────────────────────────────────────────────────────────────────────
# Execution unit handles
# ─────────────────────────────────────────────────────────────────────────────


class UnitHandle(ABC):
    """Orchestrator's side of one execution unit's message channel."""

    @abstractmethod
    async def send(self, line: str) -> None:
        """Write one JSON line to the unit."""

    @abstractmethod
    def lines(self) -> AsyncIterator[str]:
        """Yield lines written by the unit until its channel closes."""

    @abstractmethod
    async def wait(self) -> Optional[int]:
        """Wait for the unit to exit and return its exit code."""

    @abstractmethod
    def terminate(self) -> None:
        """Ask the unit to stop."""


class SubprocessUnit(UnitHandle):
    """Execution unit running as ``python -m worker``."""

    def __init__(self, process: asyncio.subprocess.Process, run_id: str, logger: logging.Logger):
        self.process = process
        self.run_id = run_id
        self.logger = logger
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    async def send(self, line: str) -> None:
        if self.process.stdin is None:
            raise ChannelError(f"Worker for run {self.run_id} has no stdin")
        self.process.stdin.write((line.rstrip("\n") + "\n").encode("utf-8"))
        await self.process.stdin.drain()

    async def lines(self) -> AsyncIterator[str]:
        if self.process.stdout is None:
            return
        while True:
            raw = await self.process.stdout.readline()
            if not raw:
                break
            yield raw.decode("utf-8", errors="replace")

    async def wait(self) -> Optional[int]:
        code = await self.process.wait()
        await self._stderr_task
        return code

    def terminate(self) -> None:
        if self.process.returncode is None:
            self.process.terminate()

    async def _drain_stderr(self) -> None:
        if self.process.stderr is None:
            return
        while True:
            raw = await self.process.stderr.readline()
            if not raw:
                break
            self.logger.info(f"[{self.run_id}] {raw.decode('utf-8', errors='replace').rstrip()}")


class SubprocessLauncher:
    """Spawns one worker process per run."""

    def __init__(self, log_level: str = "INFO", python: str = sys.executable):
        self.log_level = log_level
        self.python = python
        self.logger = logging.getLogger("ranger.worker.output")

    async def __call__(self, run_id: str) -> UnitHandle:
        env = dict(os.environ)
        pythonpath = env.get("PYTHONPATH")
        env["PYTHONPATH"] = str(PROJECT_ROOT) + (os.pathsep + pythonpath if pythonpath else "")
        env["RANGER_LOG_LEVEL"] = self.log_level
        process = await asyncio.create_subprocess_exec(
            self.python,
            "-m",
            WORKER_MODULE,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
        self.logger.debug(f"Spawned worker pid={process.pid} for run {run_id}")
        return SubprocessUnit(process, run_id, self.logger)


Launcher = Callable[[str], Awaitable[UnitHandle]]


# ─────────────────────────────────────────────────────────────────────────────
# Orchestrator
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class ActiveRun:
    run_id: str
    scenario_id: str
    unit: UnitHandle
    started_at: float = field(default_factory=time.monotonic)
    pump: Optional[asyncio.Task] = None


class RunOrchestrator:
    """Supervises every live run of this process."""

    def __init__(
        self,
        config: RangerConfig,
        store: RunStore,
        bus: EventBus,
        launcher: Optional[Launcher] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.store = store
        self.bus = bus
        self.launcher = launcher or SubprocessLauncher(log_level="DEBUG" if config.verbose else "INFO")
        self.logger = logger or logging.getLogger("ranger.orchestrator")
        self._active: dict[str, ActiveRun] = {}

    @property
    def artifacts_root(self) -> Path:
        return self.config.storage.artifacts_root

    async def start_run(self, request: VerifyRequest) -> str:
        """Persist a new run, spawn its unit and send the start message."""
        run_id = new_id("run")
        scenario = request.scenario

        self.store.create_run(run_id, scenario.id, request.profile.id, notes=request.notes)
        self.store.set_scenario_status(scenario.id, "running")

        artifacts_dir = self.artifacts_root / run_id
        artifacts_dir.mkdir(parents=True, exist_ok=True)
        run_config = self.build_run_config(run_id, request, artifacts_dir)

        try:
            unit = await self.launcher(run_id)
        except OSError as exc:
            summary = f"Failed to start worker: {exc}"
            self.store.finish_run(run_id, "error", summary, None, 0)
            self.store.set_scenario_status(scenario.id, "error")
            raise ChannelError(summary, {"run_id": run_id}) from exc

        active = ActiveRun(run_id=run_id, scenario_id=scenario.id, unit=unit)
        self._active[run_id] = active
        active.pump = asyncio.create_task(self._pump(active))

        try:
            await unit.send(encode_message(StartMessage(config=run_config)))
        except (BrokenPipeError, ConnectionResetError) as exc:
            # The pump sees the unit exit and records the failure.
            self.logger.warning(f"Could not send start to run {run_id}: {exc}")

        self.logger.info(
            f"Started run {run_id} for scenario {scenario.id} at {run_config.target_url} "
            f"({'react' if run_config.uses_model else 'screenshot-only'})"
        )
        return run_id

    def build_run_config(self, run_id: str, request: VerifyRequest, artifacts_dir: Path) -> RunConfig:
        profile = request.profile
        agent = self.config.agent
        defaults = self.config.browser
        viewport = Viewport.parse(profile.viewport) or Viewport(
            width=defaults.viewport_width, height=defaults.viewport_height
        )
        return RunConfig(
            run_id=run_id,
            browser=profile.browser or defaults.browser,
            base_url=profile.base_url,
            viewport=viewport,
            artifacts_dir=str(artifacts_dir),
            llm_provider=profile.llm_provider or agent.llm_provider,
            llm_api_key=agent.llm_api_key,
            llm_model=profile.llm_model or agent.llm_model,
            llm_base_url=agent.llm_base_url,
            scenario=ScenarioRef(
                id=request.scenario.id,
                title=request.scenario.title,
                description=request.scenario.description,
                start_path=request.scenario.start_path,
            ),
        )

    def is_run_active(self, run_id: str) -> bool:
        return run_id in self._active

    def active_run_ids(self) -> list[str]:
        return list(self._active)

    async def shutdown(self) -> None:
        """Terminate every live unit and wait for their pumps to finish."""
        runs = list(self._active.values())
        if not runs:
            return
        self.logger.info(f"Terminating {len(runs)} active run(s)")
        for active in runs:
            active.unit.terminate()
        await asyncio.gather(*(a.pump for a in runs if a.pump is not None), return_exceptions=True)

    # ─────────────────────────────────────────────────────────────────────────
    # Message pump
    # ─────────────────────────────────────────────────────────────────────────

    async def _pump(self, active: ActiveRun) -> None:
        try:
            async for line in active.unit.lines():
                if not line.strip():
                    continue
                try:
                    message = decode_worker_message(line)
                except MessageDecodeError as exc:
                    self.logger.warning(f"Run {active.run_id}: skipping malformed message: {exc.message}")
                    continue
                try:
                    self.handle_message(active.run_id, message)
                except Exception as exc:
                    self.logger.error(f"Run {active.run_id}: failed to handle {message.type}: {exc}", exc_info=True)

            code = await active.unit.wait()
            if active.run_id in self._active:
                self.logger.error(f"Run {active.run_id}: worker exited with code {code} before a verdict")
                self._record_exit(active, code)
            else:
                self.logger.debug(f"Run {active.run_id}: worker exited with code {code}")
        finally:
            self._active.pop(active.run_id, None)

    def _record_exit(self, active: ActiveRun, code: Optional[int]) -> None:
        verdict = VerdictEvent(
            verdict="error",
            summary=f"Worker exited unexpectedly with code {code}",
            duration_ms=int((time.monotonic() - active.started_at) * 1000),
        )
        try:
            self.handle_message(active.run_id, verdict)
        except Exception as exc:
            self.logger.error(f"Run {active.run_id}: failed to record exit verdict: {exc}", exc_info=True)
            # Live streams still need their closing verdict.
            self.bus.broadcast(active.run_id, verdict)

    def handle_message(self, run_id: str, message) -> None:
        """Persist and broadcast one unit message."""
        active = self._active.get(run_id)
        if active is None:
            self.logger.debug(f"Run {run_id} is no longer active; dropping {message.type}")
            return

        if isinstance(message, StepEvent):
            self._on_step(run_id, message)
        elif isinstance(message, ThinkEvent):
            self.bus.broadcast(run_id, message)
        elif isinstance(message, VerdictEvent):
            self._on_verdict(active, message)
        elif isinstance(message, ErrorEvent):
            self.store.annotate_error(run_id, message.error)
            self.bus.broadcast(run_id, message)

    def _on_step(self, run_id: str, step: StepEvent) -> None:
        if step.screenshot is not None:
            artifact = self.store.add_artifact(
                run_id,
                step.screenshot.filename,
                step_index=step.step_index,
                caption=step.screenshot.caption,
                size_bytes=step.screenshot.size_bytes,
            )
            step = step.model_copy(update={"screenshot_url": artifact_file_url(artifact.id)})
        self.bus.broadcast(run_id, step)

    def _on_verdict(self, active: ActiveRun, verdict: VerdictEvent) -> None:
        self.store.finish_run(
            active.run_id,
            verdict.verdict,
            verdict.summary,
            verdict.reasoning,
            verdict.duration_ms,
        )
        self.store.set_scenario_status(active.scenario_id, verdict.verdict)
        self.logger.info(f"Run {active.run_id} finished: {verdict.verdict} - {verdict.summary}")
        self.bus.broadcast(active.run_id, verdict)
        self._active.pop(active.run_id, None)
