"""Unit tests for the ReAct verification agent."""
from __future__ import annotations

from pathlib import Path

import pytest

import agent as agent_module
from agent import MAX_HISTORY_IMAGES, MAX_ITERATIONS, VerificationAgent
from events import StepEvent, ThinkEvent, VerdictEvent
from exceptions import ActionError, LLMError
from message_types import ImageObj, UserMessage
from prompts import CORRECTIVE_PROMPT


@pytest.fixture(autouse=True)
def no_settle_delay(monkeypatch):
    monkeypatch.setattr(agent_module, "SETTLE_DELAY_SECONDS", 0)


def _of_type(events, cls):
    return [e for e in events if isinstance(e, cls)]


def _build(mock_browser, provider, config, events) -> VerificationAgent:
    return VerificationAgent(mock_browser, provider, config, events.append)


class TestVerdicts:
    """Tests for how the loop finishes."""

    @pytest.mark.asyncio
    async def test_done_passed(self, mock_browser, scripted_provider, model_run_config, events, reply):
        provider = scripted_provider(
            [reply("done", {"verdict": "passed", "summary": "Dashboard is shown"})]
        )

        verdict = await _build(mock_browser, provider, model_run_config, events).run()

        assert verdict.verdict == "passed"
        assert verdict.summary == "Dashboard is shown"
        assert [type(e) for e in events] == [ThinkEvent, StepEvent, VerdictEvent]
        step = events[1]
        assert step.action == "done"
        assert step.detail == "Dashboard is shown"
        assert step.screenshot.filename == "step-000-observe.png"
        assert (Path(model_run_config.artifacts_dir) / "step-000-observe.png").exists()

    @pytest.mark.asyncio
    async def test_done_failed(self, mock_browser, scripted_provider, model_run_config, events, reply):
        provider = scripted_provider([reply("done", {"verdict": "failed", "summary": "No dashboard"})])

        verdict = await _build(mock_browser, provider, model_run_config, events).run()

        assert verdict.verdict == "failed"
        assert verdict.reasoning == "Next I should done."

    @pytest.mark.asyncio
    async def test_unrecognized_done_verdict_counts_as_failed(
        self, mock_browser, scripted_provider, model_run_config, events, reply
    ):
        provider = scripted_provider([reply("done", {"verdict": "inconclusive"})])

        verdict = await _build(mock_browser, provider, model_run_config, events).run()

        assert verdict.verdict == "failed"
        assert verdict.summary == agent_module.DEFAULT_DONE_SUMMARY

    @pytest.mark.asyncio
    async def test_done_without_verdict_passes(self, mock_browser, scripted_provider, model_run_config, events, reply):
        provider = scripted_provider(['{"observation": "ok", "reasoning": "looks right"}'])

        verdict = await _build(mock_browser, provider, model_run_config, events).run()

        assert verdict.verdict == "passed"

    @pytest.mark.asyncio
    async def test_null_verdict_passes(self, mock_browser, scripted_provider, model_run_config, events, reply):
        provider = scripted_provider([reply("done", {"verdict": None, "summary": "Looks fine"})])

        verdict = await _build(mock_browser, provider, model_run_config, events).run()

        assert verdict.verdict == "passed"
        assert verdict.summary == "Looks fine"

    @pytest.mark.asyncio
    async def test_iteration_limit(self, mock_browser, scripted_provider, model_run_config, events, reply):
        provider = scripted_provider([reply("scroll")] * MAX_ITERATIONS)

        verdict = await _build(mock_browser, provider, model_run_config, events).run()

        assert verdict.verdict == "error"
        assert verdict.summary == f"Iteration limit exceeded ({MAX_ITERATIONS}) without a verdict"
        steps = _of_type(events, StepEvent)
        assert [s.step_index for s in steps] == list(range(MAX_ITERATIONS))
        assert len(_of_type(events, VerdictEvent)) == 1

    @pytest.mark.asyncio
    async def test_model_failure_propagates(self, mock_browser, scripted_provider, model_run_config, events, reply):
        provider = scripted_provider([LLMError("Model call failed: 401")])

        with pytest.raises(LLMError):
            await _build(mock_browser, provider, model_run_config, events).run()
        assert _of_type(events, VerdictEvent) == []


class TestParseRetry:
    """Tests for the corrective retry."""

    @pytest.mark.asyncio
    async def test_recovers_after_one_bad_reply(self, mock_browser, scripted_provider, model_run_config, events, reply):
        provider = scripted_provider(["Sure! I'll click it.", reply("done", {"verdict": "passed"})])
        agent = _build(mock_browser, provider, model_run_config, events)

        verdict = await agent.run()

        assert verdict.verdict == "passed"
        assert provider.chat.await_count == 2
        corrective = [m for m in agent.messages if isinstance(m, UserMessage) and m.content == CORRECTIVE_PROMPT]
        assert len(corrective) == 1

    @pytest.mark.asyncio
    async def test_second_bad_reply_is_terminal(self, mock_browser, scripted_provider, model_run_config, events, reply):
        provider = scripted_provider(["nope", "still nope"])

        verdict = await _build(mock_browser, provider, model_run_config, events).run()

        assert verdict.verdict == "error"
        assert verdict.summary == "Model response could not be parsed after retry"
        assert _of_type(events, ThinkEvent) == []
        assert provider.chat.await_count == 2


class TestActions:
    """Tests for action execution."""

    @pytest.mark.asyncio
    async def test_click_then_done(self, mock_browser, scripted_provider, model_run_config, events, reply):
        provider = scripted_provider(
            [
                reply("click", {"selector": "#submit"}),
                reply("done", {"verdict": "passed", "summary": "Submitted"}),
            ]
        )

        await _build(mock_browser, provider, model_run_config, events).run()

        mock_browser.click.assert_awaited_once_with("#submit", text=None)
        steps = _of_type(events, StepEvent)
        assert steps[0].action == "click"
        assert steps[0].detail == "Clicked #submit"
        assert steps[1].screenshot.filename == "step-001-observe.png"
        thinks = _of_type(events, ThinkEvent)
        assert [t.step_index for t in thinks] == [0, 1]

    @pytest.mark.asyncio
    async def test_action_failure_is_fed_back(self, mock_browser, scripted_provider, model_run_config, events, reply):
        mock_browser.click.side_effect = ActionError("Could not click #missing: timeout", action="click")
        provider = scripted_provider(
            [
                reply("click", {"selector": "#missing"}),
                reply("done", {"verdict": "failed", "summary": "Button not found"}),
            ]
        )
        agent = _build(mock_browser, provider, model_run_config, events)

        verdict = await agent.run()

        assert verdict.verdict == "failed"
        step = _of_type(events, StepEvent)[0]
        assert step.detail == "Failed: Could not click #missing: timeout"
        feedback = [
            m for m in agent.messages
            if isinstance(m, UserMessage) and isinstance(m.content, str) and "click action failed" in m.content
        ]
        assert len(feedback) == 1

    @pytest.mark.asyncio
    async def test_unknown_action_is_fed_back_and_loop_continues(
        self, mock_browser, scripted_provider, model_run_config, events, reply
    ):
        provider = scripted_provider(
            [
                reply("hover", {"selector": "#a"}),
                reply("hover", {"selector": "#a"}),
                reply("done", {"verdict": "passed", "summary": "Menu opens"}),
            ]
        )
        agent = _build(mock_browser, provider, model_run_config, events)

        verdict = await agent.run()

        assert verdict.verdict == "passed"
        assert verdict.summary == "Menu opens"
        steps = _of_type(events, StepEvent)
        assert [s.action for s in steps] == ["hover", "hover", "done"]
        assert steps[0].detail == "Failed: Unknown action: hover"
        feedback = [
            m for m in agent.messages
            if isinstance(m, UserMessage) and isinstance(m.content, str) and "hover action failed" in m.content
        ]
        assert len(feedback) == 2
        assert CORRECTIVE_PROMPT not in [m.content for m in agent.messages if isinstance(m, UserMessage)]

    @pytest.mark.asyncio
    async def test_missing_selector_is_an_action_failure(
        self, mock_browser, scripted_provider, model_run_config, events, reply
    ):
        provider = scripted_provider([reply("click", {}), reply("done")])

        await _build(mock_browser, provider, model_run_config, events).run()

        step = _of_type(events, StepEvent)[0]
        assert step.detail == "Failed: click requires a 'selector' argument"
        mock_browser.click.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_type_fills_field(self, mock_browser, scripted_provider, model_run_config, events, reply):
        provider = scripted_provider(
            [reply("type", {"selector": "#email", "text": "qa@example.com"}), reply("done")]
        )

        await _build(mock_browser, provider, model_run_config, events).run()

        mock_browser.fill.assert_awaited_once_with("#email", "qa@example.com")
        assert _of_type(events, StepEvent)[0].detail == "Typed 'qa@example.com' into #email"

    @pytest.mark.asyncio
    async def test_scroll_defaults_and_direction(self, mock_browser, scripted_provider, model_run_config, events, reply):
        provider = scripted_provider(
            [
                reply("scroll"),
                reply("scroll", {"direction": "up", "amount": 200}),
                reply("done"),
            ]
        )

        await _build(mock_browser, provider, model_run_config, events).run()

        assert [c.args for c in mock_browser.scroll_by.await_args_list] == [(500,), (-200,)]

    @pytest.mark.asyncio
    async def test_relative_navigation_uses_base_url(
        self, mock_browser, scripted_provider, model_run_config, events, reply
    ):
        provider = scripted_provider(
            [
                reply("navigate", {"url": "/settings"}),
                reply("navigate", {"url": "https://other.example.org/x"}),
                reply("done"),
            ]
        )

        await _build(mock_browser, provider, model_run_config, events).run()

        targets = [c.args[0] for c in mock_browser.goto.await_args_list]
        assert targets == ["https://example.com/settings", "https://other.example.org/x"]

    @pytest.mark.asyncio
    async def test_wait_is_capped(self, mock_browser, scripted_provider, model_run_config, events, reply):
        provider = scripted_provider([reply("wait", {"ms": 60000}), reply("done")])

        await _build(mock_browser, provider, model_run_config, events).run()

        mock_browser.wait.assert_awaited_once_with(agent_module.MAX_WAIT_MS)


class TestHistory:
    """Tests for conversation bookkeeping."""

    @pytest.mark.asyncio
    async def test_old_screenshots_are_dropped(self, mock_browser, scripted_provider, model_run_config, events, reply):
        provider = scripted_provider([reply("scroll")] * 5 + [reply("done")])
        agent = _build(mock_browser, provider, model_run_config, events)

        await agent.run()

        images = [
            part
            for m in agent.messages
            if isinstance(m, UserMessage) and not isinstance(m.content, str)
            for part in m.content
            if isinstance(part, ImageObj)
        ]
        assert len(images) == MAX_HISTORY_IMAGES
        # The newest observation keeps its screenshot.
        last_observation = [m for m in agent.messages if isinstance(m, UserMessage)][-1]
        assert isinstance(last_observation.content[0], ImageObj)

    @pytest.mark.asyncio
    async def test_system_prompt_names_scenario(self, mock_browser, scripted_provider, model_run_config, events, reply):
        provider = scripted_provider([reply("done")])

        await _build(mock_browser, provider, model_run_config, events).run()

        system_prompt = provider.chat.await_args.args[1]
        assert "Login form" in system_prompt
        assert "Submitting valid credentials shows the dashboard." in system_prompt
