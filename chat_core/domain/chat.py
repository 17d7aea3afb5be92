"""会话实体与存储协议。

- Model: 模型名与其上下文 token 上限。
- ChatConfig: 会话级采样参数，创建后在整个会话内不变。
- Message: 单条消息，创建时完成 token 计数与校验，之后不可变。
- Chat: 会话聚合根，负责消息追加与上下文窗口裁剪。
- ChatGateway: 会话存储抽象，由 infrastructure.storage 实现。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Literal, Optional, Protocol
from uuid import uuid4

from chat_core.domain.exceptions import ChatEndedError, ValidationError
from chat_core.domain.models import Role
from chat_core.domain.tokens import count_tokens


ChatStatus = Literal["active", "ended"]

VALID_ROLES = ("system", "user", "assistant")


@dataclass(frozen=True)
class Model:
    name: str
    max_tokens: int


@dataclass
class ChatConfig:
    """会话采样参数。

    取值范围与 OpenAI chat/completions 接口保持一致：
    temperature 0~2，top_p 0~1，两个 penalty -2~2。
    """

    model: Model
    temperature: float = 1.0
    top_p: float = 1.0
    n: int = 1
    stop: List[str] = field(default_factory=list)
    max_tokens: int = 0
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0

    def validate(self) -> None:
        if not self.model.name:
            raise ValidationError(code="INVALID_CONFIG", message="model name is empty")
        if self.model.max_tokens < 1:
            raise ValidationError(code="INVALID_CONFIG", message="invalid model max tokens")
        if not 0 <= self.temperature <= 2:
            raise ValidationError(code="INVALID_CONFIG", message="invalid temperature")
        if not 0 <= self.top_p <= 1:
            raise ValidationError(code="INVALID_CONFIG", message="invalid top_p")
        if self.n < 1:
            raise ValidationError(code="INVALID_CONFIG", message="invalid n")
        if self.max_tokens < 0:
            raise ValidationError(code="INVALID_CONFIG", message="invalid max tokens")
        if not -2 <= self.presence_penalty <= 2:
            raise ValidationError(code="INVALID_CONFIG", message="invalid presence penalty")
        if not -2 <= self.frequency_penalty <= 2:
            raise ValidationError(code="INVALID_CONFIG", message="invalid frequency penalty")


@dataclass(frozen=True)
class Message:
    id: str
    role: Role
    content: str
    tokens: int
    model: Model
    created_at: datetime

    @classmethod
    def new(cls, role: str, content: str, model: Model) -> "Message":
        """创建并校验一条消息。

        Raises:
            ValidationError: 角色非法、内容为空，或内容超过模型上下文上限。
        """

        if role not in VALID_ROLES:
            raise ValidationError(code="INVALID_ROLE", message=f"invalid role: {role!r}")
        if not content:
            raise ValidationError(code="EMPTY_CONTENT", message="content is empty")
        tokens = count_tokens(content, model.name)
        if tokens > model.max_tokens:
            raise ValidationError(
                code="MESSAGE_TOO_LONG",
                message=f"message too long: {tokens} tokens exceeds {model.max_tokens}",
            )
        return cls(
            id=str(uuid4()),
            role=role,
            content=content,
            tokens=tokens,
            model=model,
            created_at=datetime.now(timezone.utc),
        )


@dataclass
class Chat:
    id: str
    user_id: str
    initial_system_message: Message
    config: ChatConfig
    messages: List[Message] = field(default_factory=list)
    erased_messages: List[Message] = field(default_factory=list)
    status: ChatStatus = "active"
    token_usage: int = 0

    @classmethod
    def new(
        cls,
        user_id: str,
        initial_system_message: Message,
        config: ChatConfig,
        chat_id: Optional[str] = None,
    ) -> "Chat":
        """创建新会话，并把系统提示作为第一条消息写入。"""

        chat = cls(
            id=chat_id or str(uuid4()),
            user_id=user_id,
            initial_system_message=initial_system_message,
            config=config,
        )
        chat.validate()
        chat.add_message(initial_system_message)
        return chat

    def validate(self) -> None:
        if not self.user_id:
            raise ValidationError(code="INVALID_CHAT", message="user id is empty")
        if self.status not in ("active", "ended"):
            raise ValidationError(code="INVALID_CHAT", message=f"invalid status: {self.status!r}")
        self.config.validate()

    def add_message(self, message: Message) -> None:
        """追加消息；超出模型上下文时从最早的消息开始移入 erased_messages。"""

        if self.status == "ended":
            raise ChatEndedError(code="CHAT_ENDED", message="chat is ended. no more messages allowed")
        limit = self.config.model.max_tokens
        if message.tokens > limit:
            raise ValidationError(
                code="MESSAGE_TOO_LONG",
                message=f"message too long: {message.tokens} tokens exceeds {limit}",
            )
        while self.messages and self.token_usage + message.tokens > limit:
            self.erased_messages.append(self.messages.pop(0))
            self.refresh_token_usage()
        self.messages.append(message)
        self.refresh_token_usage()

    def refresh_token_usage(self) -> None:
        self.token_usage = sum(m.tokens for m in self.messages)

    def count_messages(self) -> int:
        return len(self.messages)

    def end(self) -> None:
        self.status = "ended"


class ChatGateway(Protocol):
    """会话存储协议。

    find_chat_by_id 未命中时必须抛出 ChatNotFoundError，
    其余读写失败抛出 StoreError。
    """

    def find_chat_by_id(self, chat_id: str) -> Chat:
        ...

    def create_chat(self, chat: Chat) -> None:
        ...

    def save_chat(self, chat: Chat) -> None:
        ...
