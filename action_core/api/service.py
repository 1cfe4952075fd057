"""对外 API 服务模块。

提供简化的函数接口供上层应用（托盘程序 / 热键监听 / UI）调用。
UI 与操作系统相关的协作方由上层通过 init_service 注入一次，
之后所有入口共享同一个 Orchestrator 与本地模型管理器。
"""

import logging
from typing import Any, Dict, List, Optional

from action_core.config.settings import cloud_configurations_from, provider_settings_from, settings
from action_core.domain.exceptions import BusinessError
from action_core.domain.models import ActionDefinition, ExecutionRequest, NotificationType
from action_core.domain.ports import NotificationSink, ResultPresenter, TextSink
from action_core.flows.orchestrator import ConversationOrchestrator
from action_core.infrastructure.logging.logger import logger
from action_core.infrastructure.storage.json_store import JsonHistoryStore, JsonUsageTracker
from action_core.local import LocalModelManager
from action_core.providers import create_registry


_history: Optional[JsonHistoryStore] = None
_usage: Optional[JsonUsageTracker] = None
_manager: Optional[LocalModelManager] = None
_orchestrator: Optional[ConversationOrchestrator] = None


class LogNotificationSink:
    """没有 UI 时的默认通知通道：写入日志。"""

    _levels = {
        NotificationType.INFO: logging.INFO,
        NotificationType.SUCCESS: logging.INFO,
        NotificationType.WARNING: logging.WARNING,
        NotificationType.ERROR: logging.ERROR,
    }

    def notify(self, message: str, severity: NotificationType) -> None:
        logger.log(self._levels.get(severity, logging.INFO), message, extra={"extra": {"severity": severity.value}})


def _stores() -> None:
    global _history, _usage, _manager
    if _history is None:
        _history = JsonHistoryStore(root=settings.storage_root)
    if _usage is None:
        _usage = JsonUsageTracker(root=settings.storage_root)
    if _manager is None:
        _manager = LocalModelManager()


def init_service(
    text_sink: TextSink,
    presenter: ResultPresenter,
    notifier: Optional[NotificationSink] = None,
) -> ConversationOrchestrator:
    """注入外部协作方并构建默认的 Orchestrator（单例，重复调用返回同一实例）。"""
    global _orchestrator
    if _orchestrator is not None:
        return _orchestrator
    _stores()
    registry = create_registry(
        settings_source=lambda: provider_settings_from(settings),
        cloud_configurations=lambda: cloud_configurations_from(settings),
        usage_tracker=_usage,
        manager=_manager,
    )
    _orchestrator = ConversationOrchestrator(
        registry=registry,
        settings_source=lambda: provider_settings_from(settings),
        text_sink=text_sink,
        notifier=notifier or LogNotificationSink(),
        presenter=presenter,
        history=_history,
        max_refinement_rounds=settings.max_refinement_rounds,
        workers=settings.request_workers,
    )
    logger.info("Service initialised", extra={"extra": {"providers": registry.names()}})
    return _orchestrator


def get_default_orchestrator() -> ConversationOrchestrator:
    if _orchestrator is None:
        raise BusinessError(code="SERVICE_NOT_INITIALISED", message="Call init_service() before running actions.")
    return _orchestrator


def run_action(
    action: ActionDefinition,
    force_open_in_window: bool = False,
    provider_override: Optional[str] = None,
) -> Dict[str, Any]:
    """同步执行一个动作。

    Returns:
        包含 request_id、provider、输出正文、说明、修改轮数与 token 统计的字典
    """
    run = get_default_orchestrator().execute(
        ExecutionRequest(action=action, force_open_in_window=force_open_in_window, provider_override=provider_override)
    )
    response = run.response
    return {
        "request_id": run.request_id,
        "provider": run.provider.name if run.provider else None,
        "model": response.model_label if response else None,
        "output": run.main_output,
        "explanation": run.explanation,
        "rounds": run.rounds,
        "cancelled": run.cancelled,
        "usage": {
            "prompt_tokens": response.prompt_tokens,
            "completion_tokens": response.completion_tokens,
        }
        if response
        else None,
    }


def list_history() -> List[Dict[str, Any]]:
    """列出历史记录，最新的在前。"""
    _stores()
    return [
        {
            "timestamp": h.timestamp.isoformat(),
            "action_name": h.action_name,
            "provider": h.provider_label,
            "model": h.model_label,
            "input": h.input_text,
            "output": h.output_text,
            "prompt_tokens": h.prompt_tokens,
            "completion_tokens": h.completion_tokens,
            "latency_ms": h.latency_ms,
            "tokens_per_second": h.tokens_per_second,
        }
        for h in _history.list_history()
    ]


def get_usage() -> Dict[str, int]:
    _stores()
    current = _usage.current_usage()
    return {
        "year": current.year,
        "month": current.month,
        "prompt_tokens": current.prompt_tokens,
        "completion_tokens": current.completion_tokens,
        "total_tokens": current.total_tokens,
    }


def reset_usage() -> None:
    _stores()
    _usage.reset_usage()


def load_local_model() -> str:
    """按当前配置加载本地模型，返回加载后的状态。失败时抛出对应的业务异常。"""
    _stores()
    return _manager.load_model(provider_settings_from(settings)).value


def unload_local_model() -> None:
    _stores()
    _manager.unload_model()


def local_model_status() -> Dict[str, Any]:
    _stores()
    return {
        "status": _manager.status.value,
        "model": _manager.model_label,
        "error": _manager.error_message,
    }
