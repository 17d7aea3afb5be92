"""Provider 层的统一请求/流式响应模型。

本模块定义了用例层与不同 Provider 之间共享的标准数据结构：

- ChatMessage: 一条发给模型（或模型返回增量）的消息。
- ChatRequest: 一次流式补全请求，包含完整历史与采样参数。
- ChatStreamChunk: 流式返回中的单个片段。

所有 Provider 适配器都只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from typing import Literal, Optional, List


# 与 OpenAI / Moonshot / BigModel 的 role 字段一一对应
Role = Literal["system", "user", "assistant"]


@dataclass
class ChatMessage:
    """一条对话消息，既可用于请求，也可作为流式增量 delta。"""

    role: Role
    content: str


@dataclass
class ChatRequest:
    """一次完整的流式补全请求。

    model 为厂商实际模型名（来自会话配置），
    采样参数原样取自会话的 ChatConfig。
    """

    model: str
    messages: List[ChatMessage]
    temperature: float = 1.0
    top_p: float = 1.0
    max_tokens: int = 0  # 0 表示不限制，由厂商决定
    stop: List[str] = field(default_factory=list)
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ChatStreamChoice:
    """流式返回中的单个候选增量。"""

    index: int
    delta: ChatMessage
    finish_reason: Optional[str] = None


@dataclass
class ChatStreamChunk:
    """流式对话的一个片段。

    choice.delta.content 代表本片段新增的文本。
    """

    provider: str
    model: str
    choices: List[ChatStreamChoice]
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None

    @property
    def delta_text(self) -> str:
        if not self.choices:
            return ""
        return self.choices[0].delta.content or ""
