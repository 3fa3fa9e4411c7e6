"""Turn raw model replies into structured agent actions."""
from __future__ import annotations

import json
import re
from typing import Any

from exceptions import ActionParseError
from run_types import AgentAction

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


def parse_action(text: str) -> AgentAction:
    """Parse a model reply into an AgentAction.

    The reply must be a JSON object, either bare or inside a fenced code
    block (tagged ``json`` or untagged). Missing fields fall back to an empty
    observation/reasoning, the ``done`` action and no arguments; a non-object
    ``actionArgs`` counts as no arguments. The action name is not checked here,
    the agent reports unknown actions back to the model.
    """
    payload_text = (text or "").strip()
    match = _FENCED_BLOCK.search(payload_text)
    if match:
        payload_text = match.group(1).strip()

    try:
        payload: Any = json.loads(payload_text)
    except json.JSONDecodeError as exc:
        raise ActionParseError(f"Response is not valid JSON: {exc.msg}", raw_response=text) from exc

    if not isinstance(payload, dict):
        raise ActionParseError("Response JSON is not an object", raw_response=text)

    args = payload.get("actionArgs")
    if not isinstance(args, dict):
        args = {}

    kind = str(payload.get("action") or "done").strip().lower() or "done"

    return AgentAction(
        observation=str(payload.get("observation") or ""),
        reasoning=str(payload.get("reasoning") or ""),
        kind=kind,
        args=args,
    )
