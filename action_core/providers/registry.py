"""Provider 注册表与云端厂商预设。

两层概念：

- ProviderRegistry：固定的一组 Provider 适配器（"Cloud"、"Local"），
  启动时构建一次并注入 Orchestrator，按名称不区分大小写查找。
- VendorPreset：云端配置里的 vendor 字段对应的默认 base_url 与协议，
  配置中显式填写的 base_url 优先。
"""

from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Literal, Mapping, Optional, Tuple

from action_core.domain.ports import ProviderAdapter


WireProtocol = Literal["openai", "anthropic"]


@dataclass(frozen=True)
class VendorPreset:
    """单个云端厂商的默认接入方式。"""

    name: str
    base_url: str
    protocol: WireProtocol = "openai"
    requires_api_key: bool = True
    # 厂商的其他常用叫法（公司名、旧品牌名）
    aliases: Tuple[str, ...] = ()


VENDOR_PRESETS: Mapping[str, VendorPreset] = {
    "openai": VendorPreset("OpenAI", "https://api.openai.com/v1"),
    "anthropic": VendorPreset("Anthropic", "https://api.anthropic.com/v1", protocol="anthropic"),
    "groq": VendorPreset("Groq", "https://api.groq.com/openai/v1"),
    "deepseek": VendorPreset("DeepSeek", "https://api.deepseek.com/v1"),
    "openrouter": VendorPreset("OpenRouter", "https://openrouter.ai/api/v1"),
    "mistral": VendorPreset("Mistral", "https://api.mistral.ai/v1"),
    "kimi": VendorPreset("Kimi", "https://api.moonshot.cn/v1", aliases=("moonshot", "moonshotai")),
    "glm": VendorPreset("GLM", "https://open.bigmodel.cn/api/paas/v4", aliases=("zhipu", "zhipuai", "bigmodel")),
    "ollama": VendorPreset("Ollama", "http://localhost:11434/v1", requires_api_key=False),
    "custom": VendorPreset("Custom", "", requires_api_key=False),
}


def get_vendor_preset(vendor: str) -> VendorPreset:
    """根据名称获取 VendorPreset，名称与别名不区分大小写；未知厂商按 OpenAI 兼容接口处理。"""

    key = (vendor or "").strip().lower()
    for k, preset in VENDOR_PRESETS.items():
        if k == key or preset.name.lower() == key or key in preset.aliases:
            return preset
    return VENDOR_PRESETS["custom"]


class ProviderRegistry:
    """按名称（不区分大小写）查找 Provider 适配器。

    注册表在构建后不再变化，不存在全局可变状态。
    """

    def __init__(self, providers: Iterable[ProviderAdapter]):
        self._providers: Dict[str, ProviderAdapter] = {}
        for provider in providers:
            key = provider.name.lower()
            if key in self._providers:
                raise ValueError(f"Duplicate provider name: {provider.name!r}")
            self._providers[key] = provider

    def get(self, name: Optional[str]) -> Optional[ProviderAdapter]:
        if not name or not name.strip():
            return None
        return self._providers.get(name.strip().lower())

    def names(self) -> List[str]:
        return [p.name for p in self._providers.values()]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None

    def __iter__(self) -> Iterator[ProviderAdapter]:
        return iter(self._providers.values())

    def __len__(self) -> int:
        return len(self._providers)
