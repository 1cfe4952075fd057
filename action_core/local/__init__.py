"""本地模型层：模型生命周期、会话注册表与 token 级推理循环。"""

from action_core.local.inference import LocalInferenceEngine, SamplingPolicy
from action_core.local.model_manager import LocalModelManager
from action_core.local.sessions import LocalSessionRegistry

__all__ = ["LocalInferenceEngine", "LocalModelManager", "LocalSessionRegistry", "SamplingPolicy"]
