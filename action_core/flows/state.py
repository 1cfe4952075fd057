"""State definition for the action execution graph."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from threading import Event
from typing import Optional, TypedDict

from action_core.domain.models import AiResponse, ConversationTranscript, ExecutionRequest
from action_core.domain.ports import ProviderAdapter


class Phase(str, Enum):
    """Orchestrator 状态机的各个阶段。"""

    IDLE = "Idle"
    CAPTURING_INPUT = "CapturingInput"
    SELECTING_PROVIDER = "SelectingProvider"
    GENERATING = "Generating"
    AWAITING_REFINEMENT = "AwaitingRefinement"
    DONE = "Done"
    FINALIZING = "Finalizing"


@dataclass
class ActionRun:
    """一次请求从触发到结束的可变记录。

    放在图状态之外单独持有，异常退出时 Orchestrator 仍能拿到 session_id 去释放会话。
    """

    request: ExecutionRequest
    request_id: str
    cancel_event: Event = field(default_factory=Event)
    input_text: str = ""
    provider: Optional[ProviderAdapter] = None
    transcript: ConversationTranscript = field(default_factory=ConversationTranscript)
    session_id: Optional[str] = None
    response: Optional[AiResponse] = None
    main_output: str = ""
    explanation: Optional[str] = None
    rounds: int = 0
    delivered: bool = False
    started_at: float = 0.0

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class ActionState(TypedDict, total=False):
    """State shared across graph nodes."""

    run: ActionRun
    phase: Phase
    refinement: Optional[str]
