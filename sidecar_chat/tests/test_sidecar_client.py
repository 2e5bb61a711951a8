import json
import time

import httpx
import pytest

from sidecar_chat.config.settings import Settings
from sidecar_chat.domain.exceptions import ConfigurationError, InvalidRequestError, SidecarUnavailableError
from sidecar_chat.domain.models import EMPTY_RESPONSE_NOTICE, ChatMessage, InferenceRequest
from sidecar_chat.providers.sidecar_client import SidecarClient


def make_client(handler, sleeps=None, **overrides):
    params = {
        "llm_endpoint": "http://sidecar.test",
        "llm_max_retries": 3,
        "backoff_base_seconds": 1.0,
        "backoff_max_seconds": 5.0,
    }
    params.update(overrides)
    cfg = Settings(**params)
    sleeper = sleeps.append if sleeps is not None else (lambda _: None)
    return SidecarClient(cfg, transport=httpx.MockTransport(handler), sleeper=sleeper)


def hello_request(**kwargs):
    return InferenceRequest(
        messages=[
            ChatMessage(role="system", content="You are a helpful assistant."),
            ChatMessage(role="user", content="Hello"),
        ],
        **kwargs,
    )


def test_complete_success_extracts_text_and_usage():
    captured = {}

    def handler(request):
        captured["path"] = request.url.path
        captured["payload"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": "Hi there"}}], "eval_count": 5})

    client = make_client(handler)
    res = client.complete(hello_request(temperature=0.2, max_tokens=64))

    assert res.outcome == "success"
    assert res.ok
    assert res.text == "Hi there"
    assert res.usage.completion_tokens == 5
    assert res.attempts == 1
    assert captured["path"] == "/v1/chat/completions"
    payload = captured["payload"]
    assert payload["stream"] is False
    assert payload["temperature"] == 0.2
    assert payload["max_tokens"] == 64
    assert payload["model"] == "phi4"
    assert [m["role"] for m in payload["messages"]] == ["system", "user"]


def test_complete_reads_openai_usage_when_eval_count_missing():
    def handler(request):
        return httpx.Response(
            200,
            json={
                "model": "phi4:latest",
                "choices": [{"message": {"role": "assistant", "content": "  ok  "}}],
                "usage": {"prompt_tokens": 7, "completion_tokens": 3},
            },
        )

    res = make_client(handler).complete(hello_request())
    assert res.text == "ok"
    assert res.model == "phi4:latest"
    assert res.usage.prompt_tokens == 7
    assert res.usage.completion_tokens == 3


def test_complete_retries_transient_failures_then_succeeds():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        if calls["n"] == 1:
            raise httpx.ConnectError("Connection refused", request=request)
        if calls["n"] == 2:
            return httpx.Response(503, text="model loading")
        return httpx.Response(200, json={"choices": [{"message": {"content": "ready"}}]})

    sleeps = []
    res = make_client(handler, sleeps).complete(hello_request())

    assert res.outcome == "success"
    assert res.text == "ready"
    assert res.attempts == 3
    assert calls["n"] == 3
    # 1s + 2s，至少等待了前两次退避
    assert sleeps == [1.0, 2.0]


def test_complete_bad_request_fails_without_retry():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        return httpx.Response(400, json={"error": "bad messages"})

    sleeps = []
    res = make_client(handler, sleeps).complete(hello_request())

    assert res.outcome == "invalid_request"
    assert not res.ok
    assert isinstance(res.error, InvalidRequestError)
    assert res.attempts == 1
    assert calls["n"] == 1
    assert sleeps == []


def test_complete_timeouts_exhaust_retries():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        raise httpx.ReadTimeout("timed out", request=request)

    sleeps = []
    res = make_client(handler, sleeps).complete(hello_request())

    assert res.outcome == "sidecar_unavailable"
    assert isinstance(res.error, SidecarUnavailableError)
    assert res.error.attempts == 3
    assert "timed out" in res.error.last_error
    assert res.attempts == 3
    assert calls["n"] == 3
    assert sleeps == [1.0, 2.0]


def test_complete_retries_invalid_json_and_server_errors():
    responses = [
        httpx.Response(500, text="boom"),
        httpx.Response(200, content=b"not json"),
        httpx.Response(502, text="bad gateway"),
    ]

    def handler(request):
        return responses.pop(0)

    res = make_client(handler).complete(hello_request())
    assert res.outcome == "sidecar_unavailable"
    assert "502" in res.error.last_error
    assert responses == []


def test_complete_backoff_is_capped():
    def handler(request):
        raise httpx.ConnectError("down", request=request)

    sleeps = []
    client = make_client(handler, sleeps, llm_max_retries=6)
    client.complete(hello_request())
    assert sleeps == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_complete_elapsed_time_bounded_by_timeouts_and_backoff():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        if calls["n"] < 3:
            raise httpx.ConnectError("down", request=request)
        return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

    cfg = Settings(
        llm_endpoint="http://sidecar.test",
        llm_timeout=1.0,
        backoff_base_seconds=0.02,
        backoff_max_seconds=0.05,
    )
    client = SidecarClient(cfg, transport=httpx.MockTransport(handler))
    started = time.monotonic()
    res = client.complete(hello_request())
    elapsed = time.monotonic() - started

    assert res.outcome == "success"
    assert elapsed >= 0.02 + 0.04
    assert elapsed <= 3 * cfg.llm_timeout + 0.06


def test_complete_empty_choices_is_soft_success():
    def handler(request):
        return httpx.Response(200, json={"choices": []})

    res = make_client(handler).complete(hello_request())
    assert res.outcome == "empty_response"
    assert res.ok
    assert res.error is None
    assert res.text == EMPTY_RESPONSE_NOTICE


def test_complete_rejects_empty_request_without_network():
    def handler(request):
        raise AssertionError("sidecar should not be called")

    client = make_client(handler)
    with pytest.raises(InvalidRequestError):
        client.complete(InferenceRequest(messages=[]))
    with pytest.raises(InvalidRequestError):
        client.complete(InferenceRequest(messages=[ChatMessage(role="user", content="   ")]))


def test_invalid_base_url_is_configuration_error():
    class SettingsStub:
        llm_endpoint = "localhost:11434"

    with pytest.raises(ConfigurationError):
        SidecarClient(SettingsStub())


def test_health_check_reports_models_with_short_timeout():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["timeout"] = request.extensions["timeout"]
        return httpx.Response(200, json={"models": [{"name": "phi4"}, {"name": "tinyllama:latest"}]})

    health = make_client(handler).health_check()
    assert health.healthy
    assert health.models == ["phi4", "tinyllama:latest"]
    assert seen["path"] == "/api/tags"
    assert seen["timeout"]["read"] <= 5.0


def test_health_check_unhealthy_does_not_raise():
    def refused(request):
        raise httpx.ConnectError("Connection refused", request=request)

    health = make_client(refused).health_check()
    assert not health.healthy
    assert health.models == []
    assert "refused" in health.error

    def server_error(request):
        return httpx.Response(500)

    assert not make_client(server_error).health_check().healthy


def test_model_management_helpers():
    pulled = {}

    def handler(request):
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": "phi4", "size": 1}]})
        if request.url.path == "/api/pull":
            pulled.update(json.loads(request.content))
            return httpx.Response(200, json={"status": "success"})
        return httpx.Response(404)

    client = make_client(handler)
    assert client.list_models() == [{"name": "phi4", "size": 1}]
    assert client.is_model_available("phi4")
    assert not client.is_model_available("llama3")
    assert client.pull_model("llama3")
    assert pulled == {"name": "llama3", "stream": False}


def test_model_management_failures_are_soft():
    def handler(request):
        raise httpx.ConnectError("down", request=request)

    client = make_client(handler)
    assert client.list_models() == []
    assert not client.is_model_available("phi4")
    assert not client.pull_model("phi4")


@pytest.mark.parametrize(
    "body",
    [
        {"choices": [{"message": "Hi there"}]},
        {"choices": ["Hi there"]},
        {"choices": {"message": {"content": "Hi there"}}},
        ["Hi there"],
    ],
)
def test_complete_malformed_body_is_retried_not_raised(body):
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        return httpx.Response(200, json=body)

    sleeps = []
    res = make_client(handler, sleeps).complete(hello_request())

    assert res.outcome == "sidecar_unavailable"
    assert isinstance(res.error, SidecarUnavailableError)
    assert "malformed" in res.error.last_error
    assert calls["n"] == 3
    assert sleeps == [1.0, 2.0]


def test_complete_recovers_after_malformed_body():
    responses = [
        httpx.Response(200, json={"choices": [{"message": "Hi there"}]}),
        httpx.Response(200, json={"choices": [{"message": {"content": "Hi there"}}]}),
    ]

    def handler(request):
        return responses.pop(0)

    res = make_client(handler).complete(hello_request())
    assert res.outcome == "success"
    assert res.text == "Hi there"
    assert res.attempts == 2


@pytest.mark.parametrize(
    "extra, expected_tokens",
    [
        ({"eval_count": "n/a"}, 0),
        ({"eval_count": "n/a", "usage": {"completion_tokens": 4}}, 4),
        ({"usage": ["x"]}, 0),
        ({"usage": ["x"], "eval_count": 6}, 6),
        ({"eval_count": None, "usage": {"completion_tokens": True}}, 0),
    ],
)
def test_complete_tolerates_odd_usage_fields(extra, expected_tokens):
    def handler(request):
        return httpx.Response(200, json={"choices": [{"message": {"content": "Hi there"}}], **extra})

    res = make_client(handler).complete(hello_request())
    assert res.outcome == "success"
    assert res.text == "Hi there"
    assert res.usage.completion_tokens == expected_tokens
    assert res.attempts == 1


def test_complete_ignores_non_string_model_name():
    def handler(request):
        return httpx.Response(200, json={"model": 42, "choices": [{"message": {"content": "ok"}}]})

    assert make_client(handler).complete(hello_request()).model == "phi4"
