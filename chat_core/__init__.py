"""Chat Core 顶层包。

该包实现流式对话补全服务的核心：
配置加载、领域模型、Provider 适配、会话存储，
以及把这些组合起来的流式补全用例与函数式 API。
"""

from chat_core.usecase.chat_completion_stream import (
    ChatCompletionConfigInput,
    ChatCompletionInput,
    ChatCompletionOutput,
    ChatCompletionUseCase,
)

__all__ = [
    "ChatCompletionConfigInput",
    "ChatCompletionInput",
    "ChatCompletionOutput",
    "ChatCompletionUseCase",
]
