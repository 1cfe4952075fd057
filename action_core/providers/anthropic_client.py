"""Anthropic messages 接口客户端。

与 OpenAI 兼容接口的差异：
- URL: {base_url}/messages
- 认证: x-api-key 头 + anthropic-version
- system 提示词是顶层字段，不在 messages 列表里
- max_tokens 必填；usage 字段名为 input_tokens / output_tokens
"""

from typing import Any, Dict, List

import httpx

from action_core.config.settings import settings
from action_core.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from action_core.domain.models import CloudProviderConfiguration, ConversationTranscript
from action_core.providers.base import ChatCompletion
from action_core.providers.registry import get_vendor_preset


ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096


class AnthropicClient:
    """Anthropic Provider 客户端实现。"""

    protocol = "anthropic"

    def __init__(self, cfg=settings):
        self._settings = cfg

    def complete(self, config: CloudProviderConfiguration, transcript: ConversationTranscript) -> ChatCompletion:
        if not config.api_key:
            raise ValidationError(code="MISSING_API_KEY", message=f"API key not set for '{config.name}'")
        base = (config.base_url or get_vendor_preset(config.vendor).base_url).rstrip("/")
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.post(
                    f"{base}/messages",
                    json=self._build_payload(config, transcript),
                    headers={
                        "x-api-key": config.api_key,
                        "anthropic-version": ANTHROPIC_VERSION,
                        "Content-Type": "application/json",
                    },
                )
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message=f"{config.name} rate limit")
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
        return self._parse_response(resp.json())

    # ---- 辅助方法 ----

    def _build_payload(self, config: CloudProviderConfiguration, transcript: ConversationTranscript) -> dict:
        system_parts: List[str] = []
        messages: List[Dict[str, str]] = []
        for message in transcript:
            if message.role == "system":
                system_parts.append(message.content)
            else:
                messages.append({"role": message.role, "content": message.content})
        payload: Dict[str, Any] = {
            "model": config.model,
            "messages": messages,
            "max_tokens": DEFAULT_MAX_TOKENS,
            "temperature": min(config.temperature, 1.0),
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        return payload

    @staticmethod
    def _parse_response(data: Dict[str, Any]) -> ChatCompletion:
        # content 是若干 block，只拼接 text 类型
        blocks = data.get("content") or []
        text = "".join(b.get("text") or "" for b in blocks if b.get("type") == "text")
        usage_raw = data.get("usage") or {}
        return ChatCompletion(
            content=text,
            prompt_tokens=int(usage_raw.get("input_tokens", 0) or 0),
            completion_tokens=int(usage_raw.get("output_tokens", 0) or 0),
            finish_reason=data.get("stop_reason") or "",
        )
