"""云端 Provider 链路。

按持久化顺序依次尝试每一个启用的云端配置，所有配置共享同一份对话记录：

1. 某项抛出异常或返回空文本：记录日志，继续下一项。
2. 第一项返回非空文本：立即返回，后面的配置不会被调用。
3. 全部失败：抛出 AllProvidersFailed。

token 用量作为副作用转发给 UsageTracker，写入失败不影响返回结果。
带取消事件的调用在线程池里执行，取消后立即停止等待并返回空结果，
被放弃的请求在后台自行结束。
"""

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from threading import Event
from typing import Callable, Dict, List, Optional

from action_core.domain.exceptions import AllProvidersFailed, NoCloudProviderConfigured
from action_core.domain.models import (
    AiResponse,
    CloudProviderConfiguration,
    ConversationTranscript,
    ProviderKind,
)
from action_core.domain.ports import UsageTracker
from action_core.infrastructure.logging.logger import log_event
from action_core.providers.anthropic_client import AnthropicClient
from action_core.providers.base import ChatClient, ChatCompletion
from action_core.providers.chat_client import OpenAICompatibleClient
from action_core.providers.registry import get_vendor_preset


ConfigurationSource = Callable[[], List[CloudProviderConfiguration]]

CANCEL_POLL_SECONDS = 0.05


def default_clients() -> Dict[str, ChatClient]:
    return {"openai": OpenAICompatibleClient(), "anthropic": AnthropicClient()}


class CloudProviderChain:
    """名为 "Cloud" 的 Provider 适配器。"""

    name = "Cloud"
    kind = ProviderKind.CLOUD

    def __init__(
        self,
        configurations: ConfigurationSource,
        usage_tracker: Optional[UsageTracker] = None,
        clients: Optional[Dict[str, ChatClient]] = None,
    ):
        # 每次调用时重新读取配置，用户在设置里调整顺序后立即生效
        self._configurations = configurations
        self._usage_tracker = usage_tracker
        self._clients = clients or default_clients()
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="cloud")

    def enabled_configurations(self) -> List[CloudProviderConfiguration]:
        return [c for c in self._configurations() if c.enabled]

    def generate_response(
        self,
        transcript: ConversationTranscript,
        cancel_event: Optional[Event] = None,
        session_id: Optional[str] = None,
    ) -> AiResponse:
        enabled = self.enabled_configurations()
        if not enabled:
            raise NoCloudProviderConfigured(message="No cloud provider is enabled. Please configure one in settings.")

        log_ctx = {"provider": self.name, "chain_length": len(enabled)}
        failures: List[str] = []
        for position, config in enumerate(enabled):
            if cancel_event is not None and cancel_event.is_set():
                log_event(logging.INFO, "Cloud chain cancelled", log_ctx, attempted=position)
                return AiResponse(text="", model_label=config.name)

            client = self._client_for(config)
            try:
                completion = self._complete(client, config, transcript, cancel_event)
            except Exception as exc:
                failures.append(config.name)
                log_event(
                    logging.WARNING,
                    "Cloud provider attempt failed",
                    log_ctx,
                    exc_info=exc,
                    configuration=config.name,
                    vendor=config.vendor,
                    model=config.model,
                    position=position,
                )
                continue
            if completion is None:
                log_event(logging.INFO, "Cloud chain cancelled", log_ctx, attempted=position + 1, configuration=config.name)
                return AiResponse(text="", model_label=config.name)

            self._record_usage(completion.prompt_tokens, completion.completion_tokens, log_ctx)
            text = (completion.content or "").strip()
            if not text:
                failures.append(config.name)
                log_event(
                    logging.WARNING,
                    "Cloud provider returned an empty response",
                    log_ctx,
                    configuration=config.name,
                    position=position,
                )
                continue

            log_event(
                logging.INFO,
                "Cloud provider succeeded",
                log_ctx,
                configuration=config.name,
                position=position,
                prompt_tokens=completion.prompt_tokens,
                completion_tokens=completion.completion_tokens,
            )
            return AiResponse(
                text=text,
                prompt_tokens=completion.prompt_tokens,
                completion_tokens=completion.completion_tokens,
                model_label=config.name,
            )

        raise AllProvidersFailed(
            message="All configured cloud providers failed. Check your API keys and network.",
            failed=failures,
        )

    def _client_for(self, config: CloudProviderConfiguration) -> ChatClient:
        protocol = get_vendor_preset(config.vendor).protocol
        return self._clients.get(protocol) or self._clients["openai"]

    def _record_usage(self, prompt_tokens: int, completion_tokens: int, log_ctx: dict) -> None:
        if self._usage_tracker is None or (prompt_tokens <= 0 and completion_tokens <= 0):
            return
        try:
            self._usage_tracker.add_usage(prompt_tokens, completion_tokens)
        except Exception as exc:
            log_event(logging.ERROR, "Failed to record usage", log_ctx, exc_info=exc)

    def _complete(
        self,
        client: ChatClient,
        config: CloudProviderConfiguration,
        transcript: ConversationTranscript,
        cancel_event: Optional[Event],
    ) -> Optional[ChatCompletion]:
        """执行一次调用；等待期间被取消时返回 None，客户端异常原样抛出。"""

        if cancel_event is None:
            return client.complete(config, transcript)
        future = self._executor.submit(client.complete, config, transcript)
        while True:
            done, _ = wait([future], timeout=CANCEL_POLL_SECONDS)
            if done:
                return future.result()
            if cancel_event.is_set():
                future.cancel()
                return None
