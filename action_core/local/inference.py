"""本地推理引擎（名为 "Local" 的 Provider）。

一次生成的流程：

1. 渲染提示词：会话第一轮（还没有消耗 token）用 chat template 渲染完整对话；
   之后只渲染最新一条 user 消息，前面的轮次已经在会话状态里了。
2. 分词并把提示词喂给上下文（llama.cpp 内部按 n_batch 分批 decode）。
3. 逐 token 循环，最多 max_tokens 步：按温度采样；遇到结束 token 或取消即停止；
   否则解码为文本、追加到输出，并把该 token 作为下一步输入。
4. 返回去掉首尾空白的文本。

没有传 session_id 时为本次调用临时创建会话，并在所有路径上释放；
调用方传入的会话永远不会被引擎释放。
"""

import codecs
import logging
import time
from dataclasses import dataclass
from threading import Event
from typing import Any, Callable, List, Optional

from action_core.domain.exceptions import (
    ContextOverflow,
    ModelFileNotFound,
    ModelLoadFailed,
    ModelUnavailable,
)
from action_core.domain.models import (
    AiResponse,
    ChatMessage,
    ConversationTranscript,
    ModelStatus,
    ProviderKind,
    ProviderSettings,
)
from action_core.infrastructure.logging.logger import log_event
from action_core.local.chat_template import ChatTemplate
from action_core.local.model_manager import LocalModelManager
from action_core.local.sessions import LocalSession, LocalSessionRegistry


SettingsSource = Callable[[], ProviderSettings]

# 各家模型常见的回合结束标记，token_eos 之外的兜底判断
END_OF_TURN_MARKERS = frozenset({"<|im_end|>", "<|eot_id|>", "<|end|>", "<end_of_turn>", "</s>", "<|endoftext|>"})


@dataclass(frozen=True)
class SamplingPolicy:
    """基于温度的采样策略；temperature 为 0 时退化为贪心。"""

    temperature: float = 0.7
    top_k: int = 40
    top_p: float = 0.95
    min_p: float = 0.05
    repeat_penalty: float = 1.1

    @classmethod
    def from_settings(cls, settings: ProviderSettings) -> "SamplingPolicy":
        return cls(temperature=max(0.0, settings.temperature))

    def sample(self, model: Any) -> int:
        return model.sample(
            top_k=self.top_k,
            top_p=self.top_p,
            min_p=self.min_p,
            temp=self.temperature,
            repeat_penalty=self.repeat_penalty,
        )


class LocalInferenceEngine:
    name = "Local"
    kind = ProviderKind.LOCAL

    def __init__(
        self,
        manager: LocalModelManager,
        sessions: LocalSessionRegistry,
        settings_source: SettingsSource,
    ):
        self._manager = manager
        self._sessions = sessions
        self._settings_source = settings_source

    # ---- 会话 ----

    def start_session(self) -> str:
        self._ensure_loaded(self._settings_source(), None)
        return self._sessions.start_session()

    def end_session(self, session_id: str) -> None:
        self._sessions.end_session(session_id)

    # ---- 生成 ----

    def generate_response(
        self,
        transcript: ConversationTranscript,
        cancel_event: Optional[Event] = None,
        session_id: Optional[str] = None,
    ) -> AiResponse:
        settings = self._settings_source()
        if not self._ensure_loaded(settings, cancel_event):
            # 加载过程中被取消：不是错误，返回空的部分结果
            log_event(logging.INFO, "Local generation cancelled during model load", {"provider": self.name})
            return AiResponse(text="", model_label=self._manager.model_label)

        # 整个生成过程持有锁：上下文同一时间只能跑一个生成循环，
        # 卸载与会话释放也会在这里等待
        with self._manager.lock:
            transient = session_id is None
            sid = self._sessions.start_session() if transient else session_id
            try:
                session = self._sessions.require_session(sid)
                return self._generate(session, transcript, settings, cancel_event)
            finally:
                if transient:
                    self._sessions.end_session(sid)

    def _generate(
        self,
        session: LocalSession,
        transcript: ConversationTranscript,
        settings: ProviderSettings,
        cancel_event: Optional[Event],
    ) -> AiResponse:
        log_ctx = {"provider": self.name, "session_id": session.id}
        model = self._sessions.activate(session)
        first_turn = session.is_first_turn
        prompt = self.render_prompt(ChatTemplate.for_model(model), transcript, first_turn)
        tokens = model.tokenize(prompt.encode("utf-8"), add_bos=False, special=True)

        n_ctx = model.n_ctx()
        if model.n_tokens + len(tokens) >= n_ctx:
            raise ContextOverflow(
                message="The text is too long for the local model's context window.",
                prompt_tokens=len(tokens),
                context_size=n_ctx,
            )

        started = time.monotonic()
        model.eval(tokens)
        policy = SamplingPolicy.from_settings(settings)
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pieces: List[str] = []
        completion_tokens = 0
        cancelled = False
        limit = min(settings.max_tokens, n_ctx - model.n_tokens - 1)

        for _ in range(max(limit, 0)):
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                break
            token = policy.sample(model)
            if self._is_end_of_generation(model, token):
                # 把结束 token 也写进会话状态，下一轮从完整的回合边界继续
                if model.n_tokens < n_ctx:
                    model.eval([token])
                break
            pieces.append(decoder.decode(model.detokenize([token])))
            completion_tokens += 1
            model.eval([token])
        pieces.append(decoder.decode(b"", final=True))

        session.n_past = model.n_tokens
        self._manager.touch()
        elapsed = time.monotonic() - started
        log_event(
            logging.INFO,
            "Local generation finished",
            log_ctx,
            first_turn=first_turn,
            prompt_tokens=len(tokens),
            completion_tokens=completion_tokens,
            cancelled=cancelled,
            elapsed_seconds=round(elapsed, 2),
        )
        return AiResponse(
            text="".join(pieces).strip(),
            prompt_tokens=len(tokens),
            completion_tokens=completion_tokens,
            model_label=self._manager.model_label,
        )

    @staticmethod
    def render_prompt(template: ChatTemplate, transcript: ConversationTranscript, first_turn: bool) -> str:
        if first_turn:
            return template.render(transcript.messages, include_bos=True)
        latest: Optional[ChatMessage] = transcript.last_user_message()
        if latest is None:
            return template.render(transcript.messages, include_bos=True)
        return template.render([latest], include_bos=False)

    @staticmethod
    def _is_end_of_generation(model: Any, token: int) -> bool:
        if token == model.token_eos():
            return True
        marker = model.detokenize([token], special=True).decode("utf-8", errors="ignore")
        return marker in END_OF_TURN_MARKERS

    def _ensure_loaded(self, settings: ProviderSettings, cancel_event: Optional[Event]) -> bool:
        """模型未加载时同步加载。

        返回 False 表示加载期间被取消；加载失败则抛出 ModelUnavailable。
        """

        if self._manager.is_loaded:
            return True
        try:
            status = self._manager.load_model(settings, cancel_event)
        except (ModelFileNotFound, ModelLoadFailed) as exc:
            raise ModelUnavailable(message=exc.message) from exc
        if status == ModelStatus.LOADING:
            status = self._manager.wait_until_settled()
        if status == ModelStatus.LOADED:
            return True
        if cancel_event is not None and cancel_event.is_set():
            return False
        raise ModelUnavailable(
            message=self._manager.error_message or "The local model is not available.",
        )
