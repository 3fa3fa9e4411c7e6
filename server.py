"""HTTP surface: start runs, inspect them and follow them live over SSE."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
from dataclasses import asdict
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import uvicorn
from pydantic import ValidationError
from pydantic.alias_generators import to_camel
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import FileResponse, JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from config import RangerConfig, load_config
from event_bus import EventBus
from events import ErrorEvent, KeepaliveEvent, VerdictEvent, encode_message
from exceptions import ChannelError, ConfigurationError
from orchestrator import RunOrchestrator, artifact_file_url
from run_types import VerifyRequest
from store import RunStore

INACTIVE_RUN_MESSAGE = "Run is not active or already completed"

logger = logging.getLogger("ranger.server")


def format_sse(event) -> str:
    return f"data: {encode_message(event)}\n\n"


async def stream_run_events(
    orchestrator: RunOrchestrator,
    bus: EventBus,
    run_id: str,
    keepalive_seconds: float = 15.0,
) -> AsyncIterator[str]:
    """Yield SSE frames for a run until its verdict arrives.

    Closing the generator (client disconnect) only drops the subscription;
    the run itself keeps going.
    """
    if not orchestrator.is_run_active(run_id):
        yield format_sse(ErrorEvent(error=INACTIVE_RUN_MESSAGE))
        return

    queue: asyncio.Queue = asyncio.Queue()
    unsubscribe = bus.subscribe(run_id, queue.put_nowait)
    try:
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                yield format_sse(KeepaliveEvent())
                continue
            yield format_sse(event)
            if isinstance(event, VerdictEvent):
                break
    finally:
        unsubscribe()


def _camel_keys(data: dict[str, Any]) -> dict[str, Any]:
    return {to_camel(key): value for key, value in data.items()}


def _error(message: str, status_code: int, **extra: Any) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status_code)


# ─────────────────────────────────────────────────────────────────────────────
# Endpoints
# ─────────────────────────────────────────────────────────────────────────────


async def start_verification(request: Request) -> Response:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return _error("Request body must be JSON", 400)

    try:
        verify_request = VerifyRequest.model_validate(body)
    except ValidationError as exc:
        problems = [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()]
        return _error("Invalid request", 400, details=problems)

    orchestrator: RunOrchestrator = request.app.state.orchestrator
    try:
        run_id = await orchestrator.start_run(verify_request)
    except ChannelError as exc:
        logger.error(f"Could not start run: {exc.message}")
        return _error(exc.message, 500)

    return JSONResponse({"runId": run_id}, status_code=202)


async def stream_verification(request: Request) -> Response:
    run_id = request.path_params["run_id"]
    state = request.app.state
    return StreamingResponse(
        stream_run_events(
            state.orchestrator,
            state.bus,
            run_id,
            keepalive_seconds=state.config.server.keepalive_seconds,
        ),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


def _run_summary(run, state) -> dict[str, Any]:
    payload = _camel_keys(asdict(run))
    payload["active"] = state.orchestrator.is_run_active(run.id)
    payload["done"] = run.is_terminal
    return payload


async def list_runs(request: Request) -> Response:
    state = request.app.state
    scenario_id = request.query_params.get("scenarioId") or None
    runs = state.store.list_runs(scenario_id=scenario_id)
    return JSONResponse([_run_summary(run, state) for run in runs])


async def get_run(request: Request) -> Response:
    run_id = request.path_params["run_id"]
    state = request.app.state
    store: RunStore = state.store

    run = store.get_run(run_id)
    if run is None:
        return _error("Run not found", 404)

    artifacts = []
    for artifact in store.list_artifacts(run_id):
        item = _camel_keys(asdict(artifact))
        item["url"] = artifact_file_url(artifact.id)
        artifacts.append(item)

    payload = _run_summary(run, state)
    payload["scenario"] = {"id": run.scenario_id, "status": store.get_scenario_status(run.scenario_id)}
    payload["artifacts"] = artifacts
    return JSONResponse(payload)


async def get_artifact_file(request: Request) -> Response:
    artifact_id = request.path_params["artifact_id"]
    state = request.app.state

    artifact = state.store.get_artifact(artifact_id)
    if artifact is None:
        return _error("Artifact not found", 404)

    artifacts_root = Path(state.config.storage.artifacts_root).resolve()
    path = (artifacts_root / artifact.run_id / artifact.filename).resolve()
    if not path.is_relative_to(artifacts_root) or not path.is_file():
        return _error("Artifact file not found", 404)

    return FileResponse(path, media_type=artifact.mime_type)


# ─────────────────────────────────────────────────────────────────────────────
# Application
# ─────────────────────────────────────────────────────────────────────────────


def create_app(
    config: Optional[RangerConfig] = None,
    orchestrator: Optional[RunOrchestrator] = None,
    store: Optional[RunStore] = None,
    bus: Optional[EventBus] = None,
) -> Starlette:
    config = config or RangerConfig()
    store = store or (orchestrator.store if orchestrator else RunStore(config.storage.store_path))
    bus = bus or (orchestrator.bus if orchestrator else EventBus())
    orchestrator = orchestrator or RunOrchestrator(config, store, bus)

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        logger.info(f"Data directory: {config.storage.data_dir}")
        yield
        await orchestrator.shutdown()

    routes = [
        Route("/api/verify", endpoint=start_verification, methods=["POST"]),
        Route("/api/verify/{run_id}/stream", endpoint=stream_verification, methods=["GET"]),
        Route("/api/runs", endpoint=list_runs, methods=["GET"]),
        Route("/api/runs/{run_id}", endpoint=get_run, methods=["GET"]),
        Route("/api/artifacts/{artifact_id}/file", endpoint=get_artifact_file, methods=["GET"]),
    ]

    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.config = config
    app.state.store = store
    app.state.bus = bus
    app.state.orchestrator = orchestrator
    return app


def setup_logging(verbose: bool = False, log_file: Optional[Path] = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter("[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"))
        handlers.append(file_handler)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ranger verification server")
    parser.add_argument("--config", type=Path, help="Path to a JSON or YAML config file")
    parser.add_argument("--host", help="Bind address")
    parser.add_argument("--port", type=int, help="Bind port")
    parser.add_argument("--data-dir", help="Directory for the run store and artifacts")
    parser.add_argument("--browser", choices=["chromium", "firefox", "webkit"], help="Default browser engine")
    parser.add_argument("--llm-provider", help="Default model provider (anthropic or openai)")
    parser.add_argument("--llm-model", help="Default model name")
    parser.add_argument("--verbose", "-v", action="store_true", default=None, help="Enable debug logging")
    parser.add_argument("--log-file", type=Path, help="Also write logs to this rotating file")
    return parser


def cli_overrides(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "host": args.host,
        "port": args.port,
        "data_dir": args.data_dir,
        "browser": args.browser,
        "llm_provider": args.llm_provider,
        "llm_model": args.llm_model,
        "verbose": args.verbose,
    }


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    try:
        config = load_config(args.config, cli_overrides=cli_overrides(args))
    except ConfigurationError as exc:
        parser.error(str(exc))

    setup_logging(config.verbose, args.log_file)
    app = create_app(config)
    logger.info(f"Listening on http://{config.server.host}:{config.server.port}")
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level="debug" if config.verbose else "info",
    )


if __name__ == "__main__":
    main()
