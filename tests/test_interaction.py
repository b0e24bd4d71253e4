"""Tests for user interaction module."""

import pytest

from shipyard.errors import ValidationError
from shipyard.interaction import (
    AutoResponseHandler,
    CallbackInteractionHandler,
    CLIInteractionHandler,
    InputType,
    InteractionRequest,
    InteractionResponse,
    ParameterCollector,
)
from shipyard.workflow import DeploymentRequest


def scripted_input(*answers):
    """Return an input function that replays ``answers`` in order."""
    remaining = list(answers)
    prompts = []

    def _input(prompt):
        prompts.append(prompt)
        return remaining.pop(0)

    _input.prompts = prompts
    return _input


def complete_request(**overrides):
    values = dict(
        repo_url="https://github.com/acme/shop.git",
        host="deploy@203.0.113.10",
        ssh_key="/home/deploy/.ssh/id_ed25519",
        branch="main",
        app_port=8000,
        token="ghp_0123456789abcdef",
    )
    values.update(overrides)
    return DeploymentRequest(**values)


class TestInteractionRequest:
    def test_format_prompt_with_context(self):
        request = InteractionRequest(question="SSH user", context="the account used for deployment")
        prompt = request.format_prompt()
        assert "SSH user" in prompt
        assert "the account used for deployment" in prompt

    def test_confirmed(self):
        assert InteractionResponse(value="yes").confirmed
        assert InteractionResponse(value="Y").confirmed
        assert not InteractionResponse(value="no").confirmed
        assert not InteractionResponse.cancelled_response().confirmed


class TestAutoResponseHandler:
    def test_key_match_wins(self):
        handler = AutoResponseHandler({"branch": "develop"})
        response = handler.ask(InteractionRequest(question="Branch to deploy", key="branch", default="main"))
        assert response.value == "develop"

    def test_keyword_match(self):
        handler = AutoResponseHandler({"port": "3000"})
        assert handler.ask(InteractionRequest(question="Application port")).value == "3000"

    def test_defaults_and_confirm(self):
        handler = AutoResponseHandler(always_confirm=False)
        assert handler.ask(InteractionRequest(question="Branch", default="main")).value == "main"
        assert handler.ask(InteractionRequest(question="Go?", input_type=InputType.CONFIRM)).value == "no"


class TestCLIInteractionHandler:
    def test_text_uses_default(self, capsys):
        handler = CLIInteractionHandler(input_func=scripted_input(""))
        response = handler.ask(InteractionRequest(question="Branch to deploy", default="main"))
        assert response.value == "main"
        assert "Branch to deploy" in capsys.readouterr().out

    def test_confirm_repeats_until_valid(self, capsys):
        answers = scripted_input("maybe", "y")
        handler = CLIInteractionHandler(input_func=answers)
        response = handler.ask(InteractionRequest(question="Deploy?", input_type=InputType.CONFIRM))
        assert response.confirmed
        assert len(answers.prompts) == 2

    def test_secret_is_not_echoed(self):
        handler = CLIInteractionHandler(
            input_func=scripted_input(), secret_func=lambda prompt: "  ghp_0123456789abcdef "
        )
        response = handler.ask(InteractionRequest(question="Token", input_type=InputType.SECRET))
        assert response.value == "ghp_0123456789abcdef"

    def test_eof_cancels(self):
        def closed(prompt):
            raise EOFError

        response = CLIInteractionHandler(input_func=closed).ask(InteractionRequest(question="Host"))
        assert response.cancelled


class TestParameterCollector:
    def test_complete_request_only_confirms(self):
        asked = []

        def answer(request):
            asked.append(request.key)
            return InteractionResponse(value="yes")

        request = complete_request()
        collected = ParameterCollector(CallbackInteractionHandler(answer)).collect(request)
        assert collected == request
        assert asked == ["confirm"]

    def test_fills_missing_values(self):
        handler = AutoResponseHandler(
            {"repo_url": "git@github.com:acme/shop.git", "host": "203.0.113.10", "ssh_user": "deploy", "app_port": "8080"}
        )
        request = DeploymentRequest(ssh_key="/home/deploy/.ssh/id_ed25519")

        collected = ParameterCollector(handler).collect(request)

        assert collected.repo_url == "git@github.com:acme/shop.git"
        assert collected.token is None
        assert collected.branch == "main"
        assert collected.host == "203.0.113.10"
        assert collected.ssh_user == "deploy"
        assert collected.app_port == 8080

    def test_empty_token_means_public(self):
        handler = AutoResponseHandler({"token": ""})
        collected = ParameterCollector(handler).collect(complete_request(token=None))
        assert collected.token is None

    def test_gives_up_after_three_attempts(self):
        notices = []
        handler = CallbackInteractionHandler(
            lambda request: InteractionResponse(value="not-a-port"),
            lambda message, level: notices.append(level),
        )
        with pytest.raises(ValidationError) as excinfo:
            ParameterCollector(handler).collect(complete_request(app_port=None))
        assert "application port" in str(excinfo.value)
        assert notices == ["warning"] * 3

    def test_retry_then_valid(self):
        answers = iter(["99999", "8000"])
        handler = CallbackInteractionHandler(lambda request: InteractionResponse(value=next(answers)))
        collected = ParameterCollector(handler).collect(complete_request(app_port=None), assume_yes=True)
        assert collected.app_port == 8000

    def test_cancel_aborts(self):
        handler = CallbackInteractionHandler(lambda request: InteractionResponse.cancelled_response())
        with pytest.raises(ValidationError):
            ParameterCollector(handler).collect(complete_request(repo_url=None))

    def test_declined_confirmation(self):
        handler = AutoResponseHandler(always_confirm=False)
        with pytest.raises(ValidationError) as excinfo:
            ParameterCollector(handler).collect(complete_request())
        assert "not confirmed" in str(excinfo.value)

    def test_summary_hides_token(self):
        lines = ParameterCollector.summary_lines(complete_request())
        text = "\n".join(lines)
        assert "ghp_0123456789abcdef" not in text
        assert "provided" in text
