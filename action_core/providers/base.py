"""云端聊天客户端抽象接口。

CloudProviderChain 不直接依赖具体厂商的 HTTP 协议，而是依赖此协议：

- 每种线协议实现一个 ChatClient（OpenAI 兼容的 chat/completions、Anthropic messages）。
- 负责：把对话记录和一项 CloudProviderConfiguration 转成 HTTP 请求，
  并把响应 JSON 解析为统一的 ChatCompletion。

这样新增厂商时只需要在 registry 里加一个 VendorPreset。
"""

from dataclasses import dataclass
from typing import Protocol

from action_core.domain.models import CloudProviderConfiguration, ConversationTranscript


@dataclass(frozen=True)
class ChatCompletion:
    """一次云端调用的解析结果。"""

    content: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    finish_reason: str = ""


class ChatClient(Protocol):
    """云端聊天客户端协议。

    实现者需要提供：
    - protocol: 线协议名称，用于日志。
    - complete(config, transcript): 执行一次非流式对话调用。
    """

    protocol: str

    def complete(self, config: CloudProviderConfiguration, transcript: ConversationTranscript) -> ChatCompletion:
        ...
