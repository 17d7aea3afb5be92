"""Provider 抽象接口。

用例层不直接依赖具体厂商的 HTTP 细节，而是依赖此协议：

- 每个厂商实现一个 ProviderClient。
- 负责：将 ChatRequest 转成具体 API 请求，并把流式响应逐片解析为 ChatStreamChunk。
"""

from typing import Protocol, Iterable
from chat_core.domain.models import ChatRequest, ChatStreamChunk


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。

    - name: Provider 名称，用于日志。
    - chat_stream(req): 执行一次流式对话调用，逐步产出增量；
      迭代正常结束即代表流结束，其余情况抛出 BusinessError。
    """

    name: str

    def chat_stream(self, req: ChatRequest) -> Iterable[ChatStreamChunk]:
        ...
