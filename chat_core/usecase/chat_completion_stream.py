"""流式补全用例。

一次 execute 完成一整轮对话：
查找会话（不存在则新建）→ 追加用户消息 → 携带完整历史调用 Provider 流式接口 →
每收到一个片段就把累计文本写入输出队列 → 追加助手消息 → 保存会话。

会话只在整轮成功后保存一次；任何一步失败都直接抛出，不重试、不做部分持久化。
"""

import logging
import queue
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import uuid4

from chat_core.domain.chat import Chat, ChatConfig, ChatGateway, Message, Model
from chat_core.domain.exceptions import BusinessError, ChatNotFoundError, StreamError
from chat_core.domain.models import ChatMessage, ChatRequest
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import ProviderClient


@dataclass
class ChatCompletionConfigInput:
    model: str
    model_max_tokens: int
    temperature: float = 1.0
    top_p: float = 1.0
    n: int = 1
    stop: List[str] = field(default_factory=list)
    max_tokens: int = 0
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0
    initial_system_message: str = ""


@dataclass
class ChatCompletionInput:
    chat_id: Optional[str]
    user_id: str
    user_message: str
    config: ChatCompletionConfigInput


@dataclass
class ChatCompletionOutput:
    """输出队列中的一条记录，content 为截至当前片段的累计文本。"""

    chat_id: str
    user_id: str
    content: str


class ChatCompletionUseCase:
    def __init__(
        self,
        chat_gateway: ChatGateway,
        provider_client: ProviderClient,
        stream: "queue.Queue[ChatCompletionOutput]",
    ):
        self._chat_gateway = chat_gateway
        self._provider_client = provider_client
        self._stream = stream

    def execute(self, chat_input: ChatCompletionInput) -> ChatCompletionOutput:
        """执行一轮流式补全。

        Raises:
            BusinessError: 任一步骤失败，异常类型与原始错误相同，
                消息带上失败步骤的前缀，原始异常保存在 __cause__。
                流式读取中出现的非 BusinessError 异常转换为 StreamError。
        """

        start_time = time.time()
        log_ctx: Dict[str, Any] = {
            "trace_id": f"tr-{uuid4().hex}",
            "chat_id": chat_input.chat_id,
            "user_id": chat_input.user_id,
        }

        chat = self._resolve_chat(chat_input, log_ctx)

        try:
            user_message = Message.new("user", chat_input.user_message, chat.config.model)
        except BusinessError as e:
            raise e.with_prefix("error creating user message") from e
        try:
            chat.add_message(user_message)
        except BusinessError as e:
            raise e.with_prefix("error adding new message") from e

        req = self._build_request(chat)
        self._log(
            logging.INFO,
            "Calling provider (stream)",
            log_ctx,
            provider=self._provider_client.name,
            model=req.model,
            message_count=len(req.messages),
        )
        try:
            stream = self._provider_client.chat_stream(req)
        except BusinessError as e:
            raise e.with_prefix("error creating chat completion") from e

        pieces: List[str] = []
        fragments = 0
        try:
            for chunk in stream:
                pieces.append(chunk.delta_text)
                fragments += 1
                # 阻塞写入：消费方必须在另一个线程持续读取
                self._stream.put(ChatCompletionOutput(chat_id=chat.id, user_id=chat.user_id, content="".join(pieces)))
                if chunk.usage:
                    self._log(
                        logging.INFO,
                        "Token usage",
                        log_ctx,
                        prompt_tokens=chunk.usage.prompt_tokens,
                        completion_tokens=chunk.usage.completion_tokens,
                        total_tokens=chunk.usage.total_tokens,
                    )
        except BusinessError as e:
            self._log(logging.ERROR, "Stream failed", log_ctx, fragments=fragments, error=e.message)
            raise e.with_prefix("error streaming response") from e
        except Exception as e:
            # Provider 未按约定包装的异常，统一归为 StreamError
            self._log(logging.ERROR, "Stream failed", log_ctx, fragments=fragments, error=str(e))
            raise StreamError(code="STREAM_ERROR", message=f"error streaming response: {e}") from e
        full_response = "".join(pieces)
        self._log(logging.INFO, "Stream finished", log_ctx, fragments=fragments, content_length=len(full_response))

        try:
            assistant = Message.new("assistant", full_response, chat.config.model)
        except BusinessError as e:
            raise e.with_prefix("error creating assistant message") from e
        try:
            chat.add_message(assistant)
        except BusinessError as e:
            raise e.with_prefix("error adding new message") from e

        try:
            self._chat_gateway.save_chat(chat)
        except BusinessError as e:
            raise e.with_prefix("error saving chat") from e

        self._log(
            logging.INFO,
            "Saved chat",
            log_ctx,
            message_count=chat.count_messages(),
            erased_count=len(chat.erased_messages),
            token_usage=chat.token_usage,
            elapsed_seconds=round(time.time() - start_time, 2),
        )
        return ChatCompletionOutput(chat_id=chat.id, user_id=chat.user_id, content=full_response)

    def _resolve_chat(self, chat_input: ChatCompletionInput, log_ctx: Dict[str, Any]) -> Chat:
        """按 ID 查找会话；仅在明确未命中时新建。"""

        if chat_input.chat_id:
            try:
                return self._chat_gateway.find_chat_by_id(chat_input.chat_id)
            except ChatNotFoundError:
                pass
            except BusinessError as e:
                raise e.with_prefix("error fetching existing chat") from e

        try:
            chat = create_new_chat(chat_input)
        except BusinessError as e:
            raise e.with_prefix("error creating new chat") from e
        try:
            self._chat_gateway.create_chat(chat)
        except BusinessError as e:
            raise e.with_prefix("error persisting new chat") from e
        log_ctx["chat_id"] = chat.id
        self._log(logging.INFO, "Created new chat", log_ctx, model=chat.config.model.name)
        return chat

    @staticmethod
    def _build_request(chat: Chat) -> ChatRequest:
        cfg = chat.config
        return ChatRequest(
            model=cfg.model.name,
            messages=[ChatMessage(role=m.role, content=m.content) for m in chat.messages],
            temperature=cfg.temperature,
            top_p=cfg.top_p,
            max_tokens=cfg.max_tokens,
            stop=list(cfg.stop),
            presence_penalty=cfg.presence_penalty,
            frequency_penalty=cfg.frequency_penalty,
        )

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})


def create_new_chat(chat_input: ChatCompletionInput) -> Chat:
    """根据输入配置构造新会话（含初始 system 消息），不做持久化。"""

    cfg = chat_input.config
    model = Model(name=cfg.model, max_tokens=cfg.model_max_tokens)
    chat_config = ChatConfig(
        model=model,
        temperature=cfg.temperature,
        top_p=cfg.top_p,
        n=cfg.n,
        stop=list(cfg.stop),
        max_tokens=cfg.max_tokens,
        presence_penalty=cfg.presence_penalty,
        frequency_penalty=cfg.frequency_penalty,
    )
    try:
        initial_message = Message.new("system", cfg.initial_system_message, model)
    except BusinessError as e:
        raise e.with_prefix("error creating initial message") from e
    return Chat.new(chat_input.user_id, initial_message, chat_config, chat_id=chat_input.chat_id)
