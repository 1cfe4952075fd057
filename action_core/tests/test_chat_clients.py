import httpx
import pytest

from action_core.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from action_core.domain.models import CloudProviderConfiguration, ConversationTranscript
from action_core.providers.anthropic_client import AnthropicClient
from action_core.providers.chat_client import OpenAICompatibleClient


class SettingsStub:
    http_timeout = 1.0


def _config(vendor="OpenAI", api_key="sk-test-123456", base_url=None, temperature=0.7):
    return CloudProviderConfiguration(
        name="Primary", vendor=vendor, api_key=api_key, model="gpt-test", base_url=base_url, temperature=temperature
    )


def _fake_client(monkeypatch, status_code=200, body=None, captured=None, error=None):
    class Resp:
        def __init__(self):
            self.status_code = status_code
            self.text = "server said no"

        def json(self):
            return body or {}

    class Client:
        def __init__(self, *a, **kw):
            if captured is not None:
                captured["client_kwargs"] = kw

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def post(self, url, json=None, headers=None):
            if error is not None:
                raise error
            if captured is not None:
                captured.update(url=url, json=json, headers=headers)
            return Resp()

    monkeypatch.setattr("httpx.Client", Client)


def test_openai_client_parse_basic(monkeypatch):
    captured = {}
    _fake_client(
        monkeypatch,
        body={
            "choices": [{"message": {"role": "assistant", "content": "ok"}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 7, "completion_tokens": 1, "total_tokens": 8},
        },
        captured=captured,
    )
    result = OpenAICompatibleClient(SettingsStub()).complete(_config(), ConversationTranscript.start("sys", "hi"))

    assert result.content == "ok"
    assert result.prompt_tokens == 7
    assert result.completion_tokens == 1
    assert captured["url"] == "https://api.openai.com/v1/chat/completions"
    assert captured["headers"]["Authorization"] == "Bearer sk-test-123456"
    assert captured["json"]["messages"] == [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}]
    assert captured["json"]["stream"] is False
    assert captured["client_kwargs"]["trust_env"] is False


def test_openai_client_explicit_base_url_wins(monkeypatch):
    captured = {}
    _fake_client(monkeypatch, body={"choices": []}, captured=captured)
    config = _config(vendor="Groq", base_url="https://proxy.local/v1/")
    result = OpenAICompatibleClient(SettingsStub()).complete(config, ConversationTranscript.start("sys", "hi"))
    assert captured["url"] == "https://proxy.local/v1/chat/completions"
    assert result.content == ""


def test_openai_client_error_mapping(monkeypatch):
    client = OpenAICompatibleClient(SettingsStub())
    transcript = ConversationTranscript.start("sys", "hi")

    _fake_client(monkeypatch, status_code=429)
    with pytest.raises(RateLimitError):
        client.complete(_config(), transcript)

    _fake_client(monkeypatch, status_code=500)
    with pytest.raises(ApiError) as exc:
        client.complete(_config(), transcript)
    assert exc.value.http_status == 500

    _fake_client(monkeypatch, error=httpx.ConnectError("refused"))
    with pytest.raises(NetworkError):
        client.complete(_config(), transcript)


def test_openai_client_requires_key_except_for_local_vendors(monkeypatch):
    client = OpenAICompatibleClient(SettingsStub())
    transcript = ConversationTranscript.start("sys", "hi")
    with pytest.raises(ValidationError):
        client.complete(_config(api_key=""), transcript)
    with pytest.raises(ValidationError):
        client.complete(_config(vendor="Custom", api_key=""), transcript)

    captured = {}
    _fake_client(monkeypatch, body={"choices": [{"message": {"content": "local"}}]}, captured=captured)
    result = client.complete(_config(vendor="Ollama", api_key=""), transcript)
    assert result.content == "local"
    assert "Authorization" not in captured["headers"]


def test_anthropic_client_payload_and_parse(monkeypatch):
    captured = {}
    _fake_client(
        monkeypatch,
        body={
            "content": [{"type": "text", "text": "Hello"}, {"type": "tool_use", "id": "x"}, {"type": "text", "text": "!"}],
            "usage": {"input_tokens": 11, "output_tokens": 2},
            "stop_reason": "end_turn",
        },
        captured=captured,
    )
    transcript = ConversationTranscript.start("be brief", "hi")
    transcript.append("assistant", "hey")
    transcript.append("user", "again")

    result = AnthropicClient(SettingsStub()).complete(_config(vendor="Anthropic", temperature=1.5), transcript)

    assert result.content == "Hello!"
    assert result.prompt_tokens == 11
    assert result.completion_tokens == 2
    assert captured["url"] == "https://api.anthropic.com/v1/messages"
    assert captured["headers"]["x-api-key"] == "sk-test-123456"
    assert captured["json"]["system"] == "be brief"
    assert [m["role"] for m in captured["json"]["messages"]] == ["user", "assistant", "user"]
    assert captured["json"]["temperature"] == 1.0
