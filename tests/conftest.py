"""Pytest fixtures for Ranger tests."""
from __future__ import annotations

import asyncio
import io
import json
import tempfile
from pathlib import Path
from typing import Any, Dict, List
from unittest.mock import AsyncMock, MagicMock

import pytest
from PIL import Image

from config import RangerConfig, StorageConfig
from events import encode_message
from orchestrator import UnitHandle
from run_types import RunConfig, ScenarioRef, Viewport


def make_png(width: int = 64, height: int = 48, color: tuple = (220, 220, 220)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


def action_reply(action: str, args: Dict[str, Any] | None = None, **fields: str) -> str:
    """A well-formed model reply for the given action."""
    return json.dumps(
        {
            "observation": fields.get("observation", "A page is visible."),
            "reasoning": fields.get("reasoning", f"Next I should {action}."),
            "action": action,
            "actionArgs": args or {},
        }
    )


@pytest.fixture
def temp_dir() -> Path:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def mock_browser(png_bytes: bytes) -> MagicMock:
    """Create a mock browser whose screenshots land on disk like the real one."""

    async def screenshot(path=None, full_page=False):
        if path is not None:
            Path(path).write_bytes(png_bytes)
        return png_bytes

    browser = MagicMock()
    browser.start = AsyncMock()
    browser.close = AsyncMock()
    browser.goto = AsyncMock()
    browser.settle = AsyncMock()
    browser.screenshot = AsyncMock(side_effect=screenshot)
    browser.click = AsyncMock(return_value="Clicked #submit")
    browser.fill = AsyncMock()
    browser.scroll_by = AsyncMock()
    browser.scroll_to_fraction = AsyncMock()
    browser.scroll_to_top = AsyncMock()
    browser.scroll_to_bottom = AsyncMock()
    browser.wait = AsyncMock()
    browser.get_url = MagicMock(return_value="https://example.com/")
    browser.get_title = AsyncMock(return_value="Example Page")
    return browser


@pytest.fixture
def scripted_provider():
    """Build a mock model that returns the given replies in order."""

    def build(replies: List[str]) -> MagicMock:
        provider = MagicMock()
        provider.chat = AsyncMock(side_effect=list(replies))
        return provider

    return build


@pytest.fixture
def scenario() -> ScenarioRef:
    return ScenarioRef(
        id="sc_login",
        title="Login form",
        description="Submitting valid credentials shows the dashboard.",
        start_path="/login",
    )


@pytest.fixture
def run_config(temp_dir: Path, scenario: ScenarioRef) -> RunConfig:
    """Config for a screenshot-only run with an existing artifacts dir."""
    artifacts_dir = temp_dir / "artifacts" / "run_test"
    artifacts_dir.mkdir(parents=True)
    return RunConfig(
        run_id="run_test",
        base_url="https://example.com",
        viewport=Viewport(width=1024, height=768),
        artifacts_dir=str(artifacts_dir),
        scenario=scenario,
    )


@pytest.fixture
def model_run_config(run_config: RunConfig) -> RunConfig:
    """Same run, with a model configured."""
    return run_config.model_copy(update={"llm_provider": "openai", "llm_api_key": "sk-test"})


@pytest.fixture
def events() -> list:
    """Collects emitted events; pass ``events.append`` as the sink."""
    return []


@pytest.fixture
def clean_env(monkeypatch):
    """Remove RANGER_* variables so config defaults are predictable."""
    for name in (
        "RANGER_LLM_PROVIDER",
        "RANGER_LLM_API_KEY",
        "RANGER_LLM_MODEL",
        "RANGER_LLM_BASE_URL",
        "RANGER_DATA_DIR",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def reply():
    """Formats a well-formed model reply; see ``action_reply``."""
    return action_reply


class FakeUnit(UnitHandle):
    """In-memory execution unit; tests push the lines it 'writes'."""

    def __init__(self):
        self.sent: List[str] = []
        self.exit_code: int = 0
        self.terminated = False
        self._lines: asyncio.Queue = asyncio.Queue()

    def push(self, message) -> None:
        self._lines.put_nowait(message if isinstance(message, str) else encode_message(message) + "\n")

    def exit(self, code: int = 0) -> None:
        self.exit_code = code
        self._lines.put_nowait(None)

    async def send(self, line: str) -> None:
        self.sent.append(line)

    async def lines(self):
        while True:
            line = await self._lines.get()
            if line is None:
                return
            yield line

    async def wait(self) -> int:
        return self.exit_code

    def terminate(self) -> None:
        self.terminated = True
        self.exit(-15)


class FakeLauncher:
    def __init__(self):
        self.units: Dict[str, FakeUnit] = {}

    async def __call__(self, run_id: str) -> FakeUnit:
        unit = FakeUnit()
        self.units[run_id] = unit
        return unit


@pytest.fixture
def fake_launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def ranger_config(temp_dir: Path, clean_env) -> RangerConfig:
    return RangerConfig(storage=StorageConfig(data_dir=temp_dir / "data"))


@pytest.fixture
def verify_body() -> Dict[str, Any]:
    """JSON body of a start-run request."""
    return {
        "scenario": {
            "id": "sc_login",
            "title": "Login form",
            "description": "Submitting valid credentials shows the dashboard.",
            "startPath": "/login",
        },
        "profile": {"id": "prof_local", "baseUrl": "http://localhost:3000", "viewport": "1024x768"},
        "notes": "smoke",
    }
