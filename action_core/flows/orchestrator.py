"""ConversationOrchestrator：一次动作请求的顶层状态机。

Execute 的完整流程（由 flows.graph 中的 StateGraph 驱动）：

1. capture_input: 读取选中文本，为空则 InputEmpty；构造 [system, user] 初始对话。
2. select_provider: override > primary > fallback（附带提示）> NoProviderAvailable。
3. generate: 调用 Provider；窗口模式下本地会话在第一轮懒创建并在后续轮次复用。
4. deliver: 拆分正文/说明；非窗口模式粘贴，窗口模式展示结果并等待修改指令。
5. refine: 追加 assistant(上一轮回复) 与 user(修改指令)，回到 generate。
6. finalize: 释放会话。异常与取消路径同样会在 execute 的 finally 中释放。

Provider 错误只在这里统一捕获、记录一次并通知用户；编排层不会在生成中途重试，
只在选择 Provider 时做回退。
"""

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from threading import Event
from typing import Callable, Iterable, List, Optional
from uuid import uuid4

from action_core.domain.exceptions import InputEmpty, NoProviderAvailable, user_message
from action_core.domain.models import (
    ActionDefinition,
    ConversationTranscript,
    ExecutionRequest,
    HistoryEntry,
    NotificationType,
    ProviderSettings,
    ResultWindowData,
)
from action_core.domain.ports import (
    HistorySink,
    NotificationSink,
    ProviderAdapter,
    ResultPresenter,
    TextSink,
)
from action_core.flows.graph import build_graph, recursion_limit_for
from action_core.flows.state import ActionRun, ActionState, Phase
from action_core.infrastructure.logging.logger import log_event
from action_core.prompts import build_instruction, build_user_input, split_output
from action_core.providers.registry import ProviderRegistry


SettingsSource = Callable[[], ProviderSettings]

PROCESSING_MESSAGE = "Processing..."
INPUT_EMPTY_MESSAGE = "No text selected or clipboard is empty."
NO_PROVIDER_MESSAGE = "No valid AI provider could be found or configured."
HISTORY_FAILED_MESSAGE = "Failed to log history"
CANCELLED_MESSAGE = "Cancelled"
REFINEMENT_LIMIT_MESSAGE = "Refinement limit of {rounds} rounds reached. Run the action again to continue."


class ConversationOrchestrator:
    def __init__(
        self,
        registry: ProviderRegistry,
        settings_source: SettingsSource,
        text_sink: TextSink,
        notifier: NotificationSink,
        presenter: ResultPresenter,
        history: Optional[HistorySink] = None,
        max_refinement_rounds: int = 50,
        workers: int = 4,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._registry = registry
        self._settings_source = settings_source
        self._text_sink = text_sink
        self._notifier = notifier
        self._presenter = presenter
        self._history = history
        self._max_rounds = max_refinement_rounds
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="action")
        self._graph = build_graph(self, max_refinement_rounds)

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    # ---- 入口 ----

    def execute(self, request: ExecutionRequest, cancel_event: Optional[Event] = None) -> ActionRun:
        """同步执行一次请求，返回本次运行记录。

        所有异常都在这里结束：完整记录日志，用户只收到一条简短的错误通知。
        """

        run = ActionRun(
            request=request,
            request_id=uuid4().hex[:12],
            cancel_event=cancel_event or Event(),
            started_at=self._clock(),
        )
        log_ctx = {"request_id": run.request_id, "action": request.action.name}
        log_event(logging.INFO, "Action started", log_ctx, windowed=request.windowed, override=request.provider_override)
        self._notifier.notify(PROCESSING_MESSAGE, NotificationType.INFO)

        state: ActionState = {"run": run, "phase": Phase.IDLE, "refinement": None}
        try:
            self._graph.invoke(state, config={"recursion_limit": recursion_limit_for(self._max_rounds)})
        except Exception as exc:
            log_event(
                logging.ERROR,
                "Action failed",
                log_ctx,
                exc_info=exc,
                provider=getattr(run.provider, "name", None),
                round=run.rounds,
            )
            self._notifier.notify(user_message(exc), NotificationType.ERROR)
        finally:
            self._release_session(run)
        return run

    def submit(self, request: ExecutionRequest, cancel_event: Optional[Event] = None) -> "Future[ActionRun]":
        """在线程池中执行请求；每个请求占用一个 worker，互不阻塞。"""

        return self._executor.submit(self.execute, request, cancel_event)

    def execute_smart_paste(self, action: Optional[ActionDefinition]) -> Optional[ActionRun]:
        """不弹菜单直接执行预设动作，窗口模式取动作自身的设置。"""

        if action is None:
            self._notifier.notify("The configured Smart Paste action was not found.", NotificationType.ERROR)
            return None
        return self.execute(ExecutionRequest(action=action, force_open_in_window=action.open_in_window))

    def available_actions(self, actions: Iterable[ActionDefinition], active_app: Optional[str]) -> List[ActionDefinition]:
        """按当前前台进程过滤动作：application_context 为空表示全局可用。"""

        app = (active_app or "").strip().lower()
        result = [
            a
            for a in actions
            if not a.application_context or app in {c.strip().lower() for c in a.application_context}
        ]
        result.sort(key=lambda a: a.sort_order)
        if not result:
            self._notifier.notify("No actions available for the current application.", NotificationType.WARNING)
        return result

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    # ---- Provider 选择 ----

    def select_provider(self, override: Optional[str] = None) -> ProviderAdapter:
        if override and override.strip():
            provider = self._registry.get(override)
            if provider is not None:
                return provider

        settings = self._settings_source()
        provider = self._registry.get(settings.primary_service_type)
        if provider is not None:
            return provider

        provider = self._registry.get(settings.fallback_service_type)
        if provider is not None:
            self._notifier.notify(
                f"Primary provider '{settings.primary_service_type}' not available. Using fallback.",
                NotificationType.WARNING,
            )
            return provider

        raise NoProviderAvailable(
            message=NO_PROVIDER_MESSAGE,
            override=override,
            primary=settings.primary_service_type,
            fallback=settings.fallback_service_type,
        )

    # ---- 图节点调用的步骤 ----

    def capture_input(self, run: ActionRun) -> None:
        text = self._text_sink.get_selected_text()
        if text is None or not text.strip():
            raise InputEmpty(message=INPUT_EMPTY_MESSAGE)
        action = run.request.action
        run.input_text = text
        run.transcript = ConversationTranscript.start(
            build_instruction(action.instruction, action.explain_changes),
            build_user_input(action.prefix, text),
        )

    def generate(self, run: ActionRun) -> None:
        provider = run.provider
        if provider is None:
            raise NoProviderAvailable(message=NO_PROVIDER_MESSAGE)

        # 窗口模式下第一轮懒创建会话，之后每一轮复用
        if run.request.windowed and run.session_id is None and hasattr(provider, "start_session"):
            run.session_id = provider.start_session()

        started = self._clock()
        response = provider.generate_response(run.transcript, run.cancel_event, run.session_id)
        latency_ms = (self._clock() - started) * 1000.0
        run.response = response
        run.main_output, run.explanation = split_output(response.text, run.request.action.explain_changes)
        self._record_history(run, latency_ms)

    def deliver(self, run: ActionRun) -> Optional[str]:
        """把结果交给外部：窗口模式返回用户的修改指令（关闭窗口为 None）。

        取消不是错误：已经生成的部分文本（可能为空）照常交给粘贴或结果窗口。
        """

        action = run.request.action
        if run.cancelled:
            notice, severity = CANCELLED_MESSAGE, NotificationType.INFO
        else:
            elapsed = self._clock() - run.started_at
            notice, severity = f"'{action.name}' completed in {elapsed:.2f}s.", NotificationType.SUCCESS

        if not run.request.windowed:
            self._text_sink.paste_text(run.main_output)
            run.delivered = True
            self._notifier.notify(notice, severity)
            return None

        if run.rounds == 0 or run.cancelled:
            self._notifier.notify(notice, severity)
        data = ResultWindowData(
            action_name=action.name,
            main_content=run.main_output,
            explanation_content=run.explanation,
            provider_label=run.response.model_label if run.response else "",
        )
        run.delivered = True
        refinement = self._presenter.show_result(data)
        if refinement and refinement.strip() and not run.cancelled and run.rounds >= self._max_rounds:
            self._notifier.notify(
                REFINEMENT_LIMIT_MESSAGE.format(rounds=self._max_rounds),
                NotificationType.WARNING,
            )
            return None
        return refinement

    def append_refinement(self, run: ActionRun, instruction: str) -> None:
        previous = run.response.text if run.response else ""
        run.transcript.append("assistant", previous)
        run.transcript.append("user", instruction)
        run.rounds += 1

    def finalize(self, run: ActionRun) -> None:
        self._release_session(run)
        log_event(
            logging.INFO,
            "Action finished",
            {"request_id": run.request_id, "action": run.request.action.name},
            rounds=run.rounds,
            cancelled=run.cancelled,
            transcript_length=len(run.transcript),
        )

    # ---- 内部 ----

    def _release_session(self, run: ActionRun) -> None:
        if run.session_id is None or run.provider is None:
            return
        session_id, run.session_id = run.session_id, None
        try:
            run.provider.end_session(session_id)
        except Exception as exc:
            log_event(logging.WARNING, "Failed to end session", {"request_id": run.request_id}, exc_info=exc, session_id=session_id)

    def _record_history(self, run: ActionRun, latency_ms: float) -> None:
        if self._history is None or run.response is None:
            return
        response = run.response
        seconds = latency_ms / 1000.0
        entry = HistoryEntry(
            timestamp=datetime.now(timezone.utc),
            action_name=run.request.action.name,
            provider_label=run.provider.name if run.provider else "",
            model_label=response.model_label,
            input_text=run.input_text,
            output_text=response.text,
            prompt_tokens=response.prompt_tokens,
            completion_tokens=response.completion_tokens,
            latency_ms=round(latency_ms, 2),
            tokens_per_second=round(response.completion_tokens / seconds, 2) if seconds > 0 else 0.0,
        )
        try:
            self._history.add_history_entry(entry)
        except Exception as exc:
            log_event(logging.WARNING, "Failed to log history", {"request_id": run.request_id}, exc_info=exc)
            self._notifier.notify(HISTORY_FAILED_MESSAGE, NotificationType.WARNING)
