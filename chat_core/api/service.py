"""对外 API 服务模块。

提供简化的函数接口供上层应用（Web handler、CLI 等）调用：
用例在后台线程中执行，调用方在当前线程逐条读取累计输出。
"""

import queue
import threading
from typing import Any, Callable, Dict, Iterator, Optional

from chat_core.config.settings import settings
from chat_core.domain.chat import ChatGateway
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.json_store import JsonChatStore
from chat_core.infrastructure.storage.memory_store import InMemoryChatStore
from chat_core.providers import create_provider
from chat_core.providers.base import ProviderClient
from chat_core.usecase.chat_completion_stream import (
    ChatCompletionConfigInput,
    ChatCompletionInput,
    ChatCompletionOutput,
    ChatCompletionUseCase,
)


_store: Optional[ChatGateway] = None
_provider: Optional[ProviderClient] = None

# 工作线程结束的标记，只由本模块写入队列
_DONE = object()


def get_default_store() -> ChatGateway:
    """获取默认的会话存储实例（单例）。"""
    global _store
    if _store is None:
        if settings.storage_backend == "memory":
            _store = InMemoryChatStore()
        else:
            _store = JsonChatStore(root=settings.storage_root)
    return _store


def get_default_provider() -> ProviderClient:
    """获取默认 Provider 实例（单例）。"""
    global _provider
    if _provider is None:
        _provider = create_provider()
    return _provider


def get_default_usecase_factory(
    store: Optional[ChatGateway] = None,
    provider_client: Optional[ProviderClient] = None,
) -> Callable[["queue.Queue[Any]"], ChatCompletionUseCase]:
    """返回按输出队列构造用例的工厂。

    未指定 store / provider_client 时使用默认单例。
    """
    gateway = store or get_default_store()
    client = provider_client or get_default_provider()

    def factory(sink: "queue.Queue[Any]") -> ChatCompletionUseCase:
        return ChatCompletionUseCase(chat_gateway=gateway, provider_client=client, stream=sink)

    return factory


def default_config_input() -> ChatCompletionConfigInput:
    """用 settings 中的默认采样参数构造新会话配置。"""
    return ChatCompletionConfigInput(
        model=settings.default_model,
        model_max_tokens=settings.model_max_tokens,
        temperature=settings.temperature,
        top_p=settings.top_p,
        n=settings.n,
        stop=list(settings.stop),
        max_tokens=settings.max_tokens,
        presence_penalty=settings.presence_penalty,
        frequency_penalty=settings.frequency_penalty,
        initial_system_message=settings.initial_system_message,
    )


def stream_chat_completion(
    user_message: str,
    chat_id: Optional[str] = None,
    user_id: str = "anonymous",
    config: Optional[ChatCompletionConfigInput] = None,
    *,
    store: Optional[ChatGateway] = None,
    provider_client: Optional[ProviderClient] = None,
) -> Iterator[ChatCompletionOutput]:
    """流式运行一轮对话，逐条产出累计内容。

    Args:
        user_message: 用户输入内容
        chat_id: 会话ID（可选，不存在时以该 ID 新建会话）
        user_id: 用户ID
        config: 新会话使用的配置（可选，默认取 settings）
        store: 会话存储（可选，默认单例）
        provider_client: Provider 客户端（可选，默认单例）

    Yields:
        每个流式片段对应的 ChatCompletionOutput

    Raises:
        各种 domain.exceptions 中定义的异常，在工作线程中抛出后于此处重新抛出
    """
    sink: "queue.Queue[Any]" = queue.Queue()
    usecase = get_default_usecase_factory(store, provider_client)(sink)
    chat_input = ChatCompletionInput(
        chat_id=chat_id,
        user_id=user_id,
        user_message=user_message,
        config=config or default_config_input(),
    )
    errors: list[BaseException] = []

    def worker() -> None:
        try:
            usecase.execute(chat_input)
        except Exception as e:
            errors.append(e)
        finally:
            sink.put(_DONE)

    threading.Thread(target=worker, daemon=True).start()

    while True:
        item = sink.get()
        if item is _DONE:
            break
        yield item

    if errors:
        logger.error(
            f"Chat completion failed: {errors[0]}",
            extra={"extra": {"chat_id": chat_id, "user_id": user_id, "error": str(errors[0])}},
        )
        raise errors[0]


def run_chat_completion(
    user_message: str,
    chat_id: Optional[str] = None,
    user_id: str = "anonymous",
    config: Optional[ChatCompletionConfigInput] = None,
    *,
    store: Optional[ChatGateway] = None,
    provider_client: Optional[ProviderClient] = None,
) -> Dict[str, Any]:
    """运行一轮对话并返回最终结果。

    Returns:
        包含 chat_id、user_id 和完整回答 content 的字典。
        最后一条累计输出即完整回答。
    """
    last: Optional[ChatCompletionOutput] = None
    for last in stream_chat_completion(
        user_message,
        chat_id=chat_id,
        user_id=user_id,
        config=config,
        store=store,
        provider_client=provider_client,
    ):
        pass
    return {
        "chat_id": last.chat_id if last else chat_id,
        "user_id": last.user_id if last else user_id,
        "content": last.content if last else "",
    }


def get_chat_messages(chat_id: str, store: Optional[ChatGateway] = None) -> list[Dict[str, Any]]:
    """获取会话当前上下文中的所有消息。"""
    chat = (store or get_default_store()).find_chat_by_id(chat_id)
    return [
        {
            "id": m.id,
            "role": m.role,
            "content": m.content,
            "tokens": m.tokens,
            "created_at": m.created_at.isoformat(),
        }
        for m in chat.messages
    ]
