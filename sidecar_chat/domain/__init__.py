"""领域层模型与协议。

包含：
- models: Message / InferenceRequest / InferenceResult 等数据模型。
- conversation: 会话模型及 ConversationStore 协议。
- exceptions: 业务异常类型定义。
"""
