"""统一的请求、对话与结果数据模型。

本模块定义了 Orchestrator、云端链路与本地推理之间共享的标准数据结构：

- ActionDefinition / ExecutionRequest: 一次热键触发的动作及其覆盖选项。
- ChatMessage / ConversationTranscript: 发给 Provider 的有序对话记录。
- AiResponse: Provider 返回的统一结果（文本 + token 统计 + 模型标签）。
- ProviderSettings / CloudProviderConfiguration: 核心只读的配置值对象。
- HistoryEntry / UsageStatistic: 遥测写入的数据。

所有 Provider 适配器都只依赖这些模型，
由各自负责在厂商 JSON / 本地模型与这些模型之间做转换。
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterator, List, Literal, Optional, Tuple


# 对话消息角色
Role = Literal["system", "user", "assistant"]


class ProviderKind(str, Enum):
    CLOUD = "Cloud"
    LOCAL = "Local"


class ModelStatus(str, Enum):
    """本地模型状态机：NotLoaded -> Loading -> {Loaded | Error}。"""

    NOT_LOADED = "NotLoaded"
    LOADING = "Loading"
    LOADED = "Loaded"
    ERROR = "Error"


class NotificationType(str, Enum):
    INFO = "Info"
    SUCCESS = "Success"
    WARNING = "Warning"
    ERROR = "Error"


@dataclass(frozen=True)
class ActionDefinition:
    """用户定义的动作模板。

    - instruction: 系统提示词（规则与约束）。
    - prefix: 拼接在选中文本前面的短语。
    - explain_changes: 是否要求模型在正文后附上修改说明。
    - open_in_window: 默认在结果窗口中展示，而不是原地粘贴。
    - application_context: 只在这些进程中显示；为空表示全局可用。
    """

    name: str
    instruction: str = ""
    prefix: str = ""
    explain_changes: bool = False
    open_in_window: bool = False
    application_context: Tuple[str, ...] = ()
    sort_order: int = 0


@dataclass(frozen=True)
class ExecutionRequest:
    """一次执行请求，不可变，只被消费一次。"""

    action: ActionDefinition
    force_open_in_window: bool = False
    provider_override: Optional[str] = None

    @property
    def windowed(self) -> bool:
        return self.force_open_in_window or self.action.open_in_window


@dataclass(frozen=True)
class ChatMessage:
    role: Role
    content: str


@dataclass
class ConversationTranscript:
    """有序的对话记录，只允许追加。"""

    messages: List[ChatMessage] = field(default_factory=list)

    @classmethod
    def start(cls, instruction: str, user_input: str) -> "ConversationTranscript":
        return cls([ChatMessage("system", instruction), ChatMessage("user", user_input)])

    def append(self, role: Role, content: str) -> None:
        self.messages.append(ChatMessage(role, content))

    def last_user_message(self) -> Optional[ChatMessage]:
        for message in reversed(self.messages):
            if message.role == "user":
                return message
        return None

    def as_payload(self) -> List[dict]:
        return [{"role": m.role, "content": m.content} for m in self.messages]

    def __len__(self) -> int:
        return len(self.messages)

    def __iter__(self) -> Iterator[ChatMessage]:
        return iter(self.messages)


@dataclass(frozen=True)
class AiResponse:
    text: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model_label: str = ""


@dataclass(frozen=True)
class ProviderSettings:
    """Provider 相关的只读配置。"""

    primary_service_type: str = "Cloud"
    fallback_service_type: str = "None"
    local_model_path: str = ""
    context_size: int = 4096
    max_tokens: int = 2048
    temperature: float = 0.7
    cpu_cores: int = 4
    prefer_gpu: bool = True
    memory_map: bool = True
    memory_lock: bool = False
    auto_unload: bool = True
    idle_timeout_minutes: int = 30


@dataclass(frozen=True)
class CloudProviderConfiguration:
    """云端链路中的一项配置，按持久化顺序排列。"""

    name: str
    vendor: str
    api_key: str
    model: str
    base_url: Optional[str] = None
    temperature: float = 0.7
    enabled: bool = True


@dataclass(frozen=True)
class ResultWindowData:
    action_name: str
    main_content: str
    explanation_content: Optional[str] = None
    provider_label: str = ""


@dataclass
class HistoryEntry:
    timestamp: datetime
    action_name: str
    provider_label: str
    model_label: str
    input_text: str
    output_text: str
    prompt_tokens: int
    completion_tokens: int
    latency_ms: float
    tokens_per_second: float


@dataclass
class UsageStatistic:
    year: int
    month: int
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens
