"""LLM Provider 集成层。

该包下的模块负责：
- 定义云端线协议客户端的抽象 (base)。
- 维护厂商预设与按名称查找的 ProviderRegistry (registry)。
- 提供 OpenAI 兼容与 Anthropic 两种线协议实现 (chat_client、anthropic_client)。
- 按顺序尝试云端配置的 CloudProviderChain (cloud_chain)。
"""

from typing import Callable, List, Optional

from action_core.domain.models import CloudProviderConfiguration, ProviderSettings
from action_core.domain.ports import UsageTracker
from action_core.local import LocalInferenceEngine, LocalModelManager, LocalSessionRegistry
from action_core.providers.cloud_chain import CloudProviderChain
from action_core.providers.registry import ProviderRegistry


def create_registry(
    settings_source: Callable[[], ProviderSettings],
    cloud_configurations: Callable[[], List[CloudProviderConfiguration]],
    usage_tracker: Optional[UsageTracker] = None,
    manager: Optional[LocalModelManager] = None,
) -> ProviderRegistry:
    """构建固定的 Provider 集合（"Cloud" 与 "Local"），启动时调用一次。"""

    manager = manager or LocalModelManager()
    sessions = LocalSessionRegistry(manager)
    return ProviderRegistry(
        [
            CloudProviderChain(cloud_configurations, usage_tracker=usage_tracker),
            LocalInferenceEngine(manager, sessions, settings_source),
        ]
    )


__all__ = ["CloudProviderChain", "ProviderRegistry", "create_registry"]
