"""In-memory ChatGateway，进程退出即丢失，适合测试与开发。"""

import copy
import threading
from typing import Dict, List

from chat_core.domain.chat import Chat
from chat_core.domain.exceptions import ChatNotFoundError, StoreError


class InMemoryChatStore:
    def __init__(self) -> None:
        self._chats: Dict[str, Chat] = {}
        self._lock = threading.Lock()

    def find_chat_by_id(self, chat_id: str) -> Chat:
        with self._lock:
            chat = self._chats.get(chat_id)
            if chat is None:
                raise ChatNotFoundError(message=f"chat not found: {chat_id}")
            return copy.deepcopy(chat)

    def create_chat(self, chat: Chat) -> None:
        with self._lock:
            if chat.id in self._chats:
                raise StoreError(code="CHAT_EXISTS", message=f"chat already exists: {chat.id}")
            self._chats[chat.id] = copy.deepcopy(chat)

    def save_chat(self, chat: Chat) -> None:
        with self._lock:
            if chat.id not in self._chats:
                raise StoreError(code="STORE_WRITE_ERROR", message=f"chat does not exist: {chat.id}")
            self._chats[chat.id] = copy.deepcopy(chat)

    def list_chat_ids(self) -> List[str]:
        with self._lock:
            return list(self._chats)
