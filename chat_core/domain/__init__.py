"""领域层模型与协议。

包含：
- models: Provider 层统一的 ChatMessage / ChatRequest / ChatStreamChunk 模型。
- chat: 会话、消息、模型配置实体及 ChatGateway 存储抽象。
- tokens: 消息 token 计数。
- exceptions: 业务异常类型定义。
"""
