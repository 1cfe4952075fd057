"""OpenAI 兼容的 chat/completions 客户端。

OpenAI、Groq、DeepSeek、OpenRouter、Mistral、Kimi、GLM、Ollama 都使用同一种接口：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>

本实现只依赖公共字段：model/messages/temperature，以及响应中的 choices/usage。
"""

from typing import Any, Dict

import httpx

from action_core.config.settings import settings
from action_core.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from action_core.domain.models import CloudProviderConfiguration, ConversationTranscript
from action_core.providers.base import ChatCompletion
from action_core.providers.registry import get_vendor_preset


class OpenAICompatibleClient:
    """OpenAI 兼容协议的客户端实现。"""

    protocol = "openai"

    def __init__(self, cfg=settings):
        # Settings 里只用到 http_timeout
        self._settings = cfg

    def complete(self, config: CloudProviderConfiguration, transcript: ConversationTranscript) -> ChatCompletion:
        """执行一次非流式对话调用。

        步骤：
        1. 解析 base_url（配置优先，其次厂商预设）。
        2. 构造 HTTP 请求 payload。
        3. 发送请求并捕获网络错误/限流/服务端错误。
        4. 解析 choices[0].message.content 与 usage。
        """

        preset = get_vendor_preset(config.vendor)
        base = (config.base_url or preset.base_url).rstrip("/")
        if not base:
            raise ValidationError(code="MISSING_BASE_URL", message=f"No base URL for '{config.name}'")
        if preset.requires_api_key and not config.api_key:
            # 配置缺失走 ValidationError，方便链路统一跳过
            raise ValidationError(code="MISSING_API_KEY", message=f"API key not set for '{config.name}'")

        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.post(
                    f"{base}/chat/completions",
                    json=self._build_payload(config, transcript),
                    headers=headers,
                )
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时等
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message=f"{config.name} rate limit")
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
        return self._parse_response(resp.json())

    def _build_payload(self, config: CloudProviderConfiguration, transcript: ConversationTranscript) -> dict:
        return {
            "model": config.model,
            "messages": transcript.as_payload(),
            "temperature": config.temperature,
            "stream": False,
        }

    @staticmethod
    def _parse_response(data: Dict[str, Any]) -> ChatCompletion:
        choices = data.get("choices") or []
        content = ""
        finish_reason = ""
        if choices:
            message = choices[0].get("message") or {}
            content = message.get("content") or ""
            finish_reason = choices[0].get("finish_reason") or ""
        usage_raw = data.get("usage") or {}
        return ChatCompletion(
            content=content,
            prompt_tokens=int(usage_raw.get("prompt_tokens", 0) or 0),
            completion_tokens=int(usage_raw.get("completion_tokens", 0) or 0),
            finish_reason=finish_reason,
        )
