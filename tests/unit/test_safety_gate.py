import logging
from types import SimpleNamespace

import httpx
import openai
import pytest

from query_gateway.errors import SafetyBlocked, UpstreamAuthFailure, UpstreamTimeout
from query_gateway.safety.gate import SafetyGate
from query_gateway.safety.moderation import OpenAIModerator


class FakeModerator:
    def __init__(self, flagged: bool = False, error: Exception | None = None) -> None:
        self.flagged = flagged
        self.error = error
        self.calls: list[list[str]] = []

    def moderate(self, texts):
        self.calls.append(list(texts))
        if self.error is not None:
            raise self.error
        return [self.flagged for _ in texts]


def test_pii_blocks_before_moderation_is_called() -> None:
    moderator = FakeModerator()
    gate = SafetyGate(moderator)

    finding = gate.evaluate(["Meine Mail ist a@b.test"])

    assert finding.flagged
    assert finding.kinds == ["email"]
    assert moderator.calls == []


def test_moderation_flag_blocks() -> None:
    gate = SafetyGate(FakeModerator(flagged=True))

    finding = gate.evaluate(["etwas Unzulässiges"])

    assert finding.flagged
    assert finding.moderation_flagged
    assert finding.kinds == ["moderation"]


def test_clean_text_passes_after_moderation() -> None:
    moderator = FakeModerator()
    gate = SafetyGate(moderator)

    finding = gate.evaluate(["Wie viel Sand haben wir?", ""])

    assert not finding.flagged
    assert moderator.calls == [["Wie viel Sand haben wir?"]]


def test_empty_input_skips_moderation() -> None:
    moderator = FakeModerator()

    assert not SafetyGate(moderator).evaluate(["", "   "]).flagged
    assert moderator.calls == []


def test_ensure_safe_raises_with_kinds() -> None:
    gate = SafetyGate(FakeModerator())

    with pytest.raises(SafetyBlocked) as excinfo:
        gate.ensure_safe(["Ruf an: +49 170 1234567"])

    assert "phone" in excinfo.value.kinds
    assert excinfo.value.status_code == 422


def test_moderation_failure_fails_closed() -> None:
    gate = SafetyGate(FakeModerator(error=UpstreamTimeout("moderation timed out")))

    with pytest.raises(UpstreamTimeout):
        gate.ensure_safe(["Hallo"])


def test_raw_pii_never_reaches_logs(caplog) -> None:
    caplog.set_level(logging.WARNING, logger="query_gateway.safety.gate")

    SafetyGate(FakeModerator()).evaluate(["kontakt: max@example.test"])

    assert caplog.records
    assert all("max@example.test" not in record.getMessage() for record in caplog.records)


def test_openai_moderator_returns_per_text_verdicts() -> None:
    calls = []

    def _create(**kwargs):
        calls.append(kwargs)
        return SimpleNamespace(results=[SimpleNamespace(flagged=False), SimpleNamespace(flagged=True)])

    client = SimpleNamespace(moderations=SimpleNamespace(create=_create))
    moderator = OpenAIModerator(client=client, model="omni-moderation-latest")

    assert moderator.moderate(["a", "b"]) == [False, True]
    assert calls == [{"model": "omni-moderation-latest", "input": ["a", "b"]}]


def test_openai_errors_map_to_gateway_taxonomy() -> None:
    request = httpx.Request("POST", "https://api.openai.com/v1/moderations")

    def _timeout(**kwargs):
        raise openai.APITimeoutError(request=request)

    def _unauthorized(**kwargs):
        raise openai.AuthenticationError(
            "invalid key", response=httpx.Response(401, request=request), body=None
        )

    timeout_client = SimpleNamespace(moderations=SimpleNamespace(create=_timeout))
    auth_client = SimpleNamespace(moderations=SimpleNamespace(create=_unauthorized))

    with pytest.raises(UpstreamTimeout):
        OpenAIModerator(client=timeout_client).moderate(["x"])
    with pytest.raises(UpstreamAuthFailure):
        OpenAIModerator(client=auth_client).moderate(["x"])
