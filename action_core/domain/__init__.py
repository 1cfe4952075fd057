"""领域层模型与协议。

包含：
- models: ExecutionRequest / ConversationTranscript / AiResponse 等值对象。
- ports: UI、剪贴板、遥测与 Provider 的协议定义。
- exceptions: 业务异常类型定义。
"""
