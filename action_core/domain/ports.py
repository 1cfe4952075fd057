"""核心与外部协作方之间的端口协议。

UI、操作系统剪贴板与持久化都不属于本包，Orchestrator 只依赖这里的协议，
由上层在启动时注入具体实现。
"""

from threading import Event
from typing import List, Optional, Protocol

from .models import (
    AiResponse,
    ConversationTranscript,
    HistoryEntry,
    NotificationType,
    ProviderKind,
    ResultWindowData,
    UsageStatistic,
)


class ProviderAdapter(Protocol):
    """把对话记录转换为生成文本的 Provider。

    - name: 注册名（"Cloud" / "Local"），查找时不区分大小写。
    - kind: 云端或本地。
    - generate_response: session_id 仅对本地 Provider 有意义。
    """

    name: str
    kind: ProviderKind

    def generate_response(
        self,
        transcript: ConversationTranscript,
        cancel_event: Optional[Event] = None,
        session_id: Optional[str] = None,
    ) -> AiResponse:
        ...


class SessionCapable(Protocol):
    """支持有状态多轮会话的 Provider（本地模型）。"""

    def start_session(self) -> str:
        ...

    def end_session(self, session_id: str) -> None:
        ...


class NotificationSink(Protocol):
    def notify(self, message: str, severity: NotificationType) -> None:
        ...


class ResultPresenter(Protocol):
    """展示结果窗口，并阻塞等待用户的下一步操作。

    返回新的修改指令；用户关闭窗口时返回 None。
    """

    def show_result(self, data: ResultWindowData) -> Optional[str]:
        ...


class TextSink(Protocol):
    """操作系统层：读取选中文本、粘贴文本。"""

    def get_selected_text(self) -> Optional[str]:
        ...

    def paste_text(self, text: str) -> None:
        ...


class HistorySink(Protocol):
    def add_history_entry(self, entry: HistoryEntry) -> None:
        ...

    def list_history(self) -> List[HistoryEntry]:
        ...


class UsageTracker(Protocol):
    def add_usage(self, prompt_tokens: int, completion_tokens: int) -> None:
        ...

    def current_usage(self) -> UsageStatistic:
        ...
