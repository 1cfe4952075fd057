"""Action Core 顶层包。

该包提供热键触发的 AI 文本动作的执行引擎，
包括配置加载、领域模型、云端 Provider 链路、本地模型生命周期与会话、
token 级推理循环、动作编排状态机与遥测存储等能力。
"""

from action_core.domain.models import ActionDefinition, ExecutionRequest
from action_core.flows.orchestrator import ConversationOrchestrator

__all__ = ["ActionDefinition", "ConversationOrchestrator", "ExecutionRequest"]
