"""Typed objects shared by the orchestrator and the execution unit."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

RunState = Literal["running", "passed", "failed", "error"]
VerdictKind = Literal["passed", "failed", "error"]

DEFAULT_VIEWPORT_WIDTH = 1280
DEFAULT_VIEWPORT_HEIGHT = 720


class WireModel(BaseModel):
    """Immutable model serialized with camelCase keys on the wire."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class Viewport(WireModel):
    width: int = Field(default=DEFAULT_VIEWPORT_WIDTH, gt=0)
    height: int = Field(default=DEFAULT_VIEWPORT_HEIGHT, gt=0)

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["Viewport"]:
        """Parse a ``WxH`` profile string; anything malformed yields None."""
        if not raw:
            return None
        parts = raw.lower().split("x")
        if len(parts) != 2:
            return None
        try:
            width, height = int(parts[0]), int(parts[1])
        except ValueError:
            return None
        if width <= 0 or height <= 0:
            return None
        return cls(width=width, height=height)


class ScenarioRef(WireModel):
    id: str
    title: str
    description: str
    start_path: Optional[str] = None


class RunConfig(WireModel):
    """Everything an execution unit needs to carry out one run."""

    run_id: str
    browser: str = "chromium"
    base_url: str
    viewport: Optional[Viewport] = None
    artifacts_dir: str
    llm_provider: Optional[str] = None
    llm_api_key: Optional[str] = None
    llm_model: Optional[str] = None
    llm_base_url: Optional[str] = None
    scenario: ScenarioRef

    @property
    def uses_model(self) -> bool:
        return bool(self.llm_provider and self.llm_api_key)

    @property
    def target_url(self) -> str:
        """Scenario entry URL: base URL joined with the start path."""
        path = self.scenario.start_path or "/"
        if not path.startswith("/"):
            path = "/" + path
        return self.base_url.rstrip("/") + path


class ProfileRef(WireModel):
    """Target environment a scenario is verified against."""

    id: str = Field(min_length=1)
    base_url: str = Field(min_length=1)
    browser: Optional[str] = None
    # "WxH"; malformed values fall back to the default viewport
    viewport: Optional[str] = None
    llm_provider: Optional[str] = None
    llm_model: Optional[str] = None


class ScenarioInput(WireModel):
    id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    start_path: Optional[str] = None


class VerifyRequest(WireModel):
    """Body of a request to start a verification run."""

    scenario: ScenarioInput
    profile: ProfileRef
    notes: Optional[str] = None


@dataclass
class AgentAction:
    """One decision parsed from a model reply."""

    observation: str = ""
    reasoning: str = ""
    kind: str = "done"
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RunRecord:
    id: str
    scenario_id: str
    profile_id: Optional[str]
    state: RunState
    started_at: str
    summary: Optional[str] = None
    reasoning: Optional[str] = None
    duration_ms: Optional[int] = None
    notes: Optional[str] = None
    error_msg: Optional[str] = None
    finished_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state != "running"


@dataclass
class ArtifactRecord:
    id: str
    run_id: str
    filename: str
    step_index: Optional[int]
    caption: Optional[str]
    size_bytes: Optional[int]
    created_at: str
    kind: str = "screenshot"
    mime_type: str = "image/png"
