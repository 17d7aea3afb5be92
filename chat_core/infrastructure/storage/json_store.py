import json
import os
from contextlib import suppress
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, List
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.chat import Chat, ChatConfig, Message, Model
from chat_core.domain.exceptions import ChatNotFoundError, StoreError


class JsonChatStore:
    """以 JSON 文件保存会话，每个会话一个 <root>/chats/<id>.json。"""

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._chat_root = self._root / "chats"
        self._chat_root.mkdir(parents=True, exist_ok=True)

    def find_chat_by_id(self, chat_id: str) -> Chat:
        path = self._path(chat_id)
        if not path.exists():
            raise ChatNotFoundError(message=f"chat not found: {chat_id}")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return self._to_chat(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise StoreError(code="STORE_READ_ERROR", message=str(e))

    def create_chat(self, chat: Chat) -> None:
        path = self._path(chat.id)
        if path.exists():
            raise StoreError(code="CHAT_EXISTS", message=f"chat already exists: {chat.id}")
        self._write(path, chat)

    def save_chat(self, chat: Chat) -> None:
        path = self._path(chat.id)
        if not path.exists():
            raise StoreError(code="STORE_WRITE_ERROR", message=f"chat does not exist: {chat.id}")
        self._write(path, chat)

    def list_chat_ids(self) -> List[str]:
        return sorted(p.stem for p in self._chat_root.glob("*.json"))

    def _path(self, chat_id: str) -> Path:
        # chat_id 直接作为文件名，禁止路径分隔符
        if not chat_id or chat_id in (".", "..") or Path(chat_id).name != chat_id:
            raise StoreError(code="INVALID_CHAT_ID", message=f"invalid chat id: {chat_id!r}")
        return self._chat_root / f"{chat_id}.json"

    def _write(self, path: Path, chat: Chat) -> None:
        tmp_path = path.with_name(f"{path.stem}.{uuid4().hex}.json.tmp")
        try:
            tmp_path.write_text(json.dumps(self._from_chat(chat), ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            # 不留下半写入的临时文件
            with suppress(OSError):
                tmp_path.unlink(missing_ok=True)
            raise StoreError(code="STORE_WRITE_ERROR", message=str(e)) from e

    def _from_chat(self, chat: Chat) -> Dict[str, Any]:
        cfg = chat.config
        return {
            "id": chat.id,
            "user_id": chat.user_id,
            "status": chat.status,
            "token_usage": chat.token_usage,
            "config": {
                "model": {"name": cfg.model.name, "max_tokens": cfg.model.max_tokens},
                "temperature": cfg.temperature,
                "top_p": cfg.top_p,
                "n": cfg.n,
                "stop": list(cfg.stop),
                "max_tokens": cfg.max_tokens,
                "presence_penalty": cfg.presence_penalty,
                "frequency_penalty": cfg.frequency_penalty,
            },
            "initial_system_message": self._from_message(chat.initial_system_message),
            "messages": [self._from_message(m) for m in chat.messages],
            "erased_messages": [self._from_message(m) for m in chat.erased_messages],
        }

    @staticmethod
    def _from_message(m: Message) -> Dict[str, Any]:
        return {
            "id": m.id,
            "role": m.role,
            "content": m.content,
            "tokens": m.tokens,
            "model": {"name": m.model.name, "max_tokens": m.model.max_tokens},
            "created_at": m.created_at.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
        }

    def _to_chat(self, data: Dict[str, Any]) -> Chat:
        cfg = data["config"]
        config = ChatConfig(
            model=Model(name=cfg["model"]["name"], max_tokens=int(cfg["model"]["max_tokens"])),
            temperature=float(cfg.get("temperature", 1.0)),
            top_p=float(cfg.get("top_p", 1.0)),
            n=int(cfg.get("n", 1)),
            stop=list(cfg.get("stop") or []),
            max_tokens=int(cfg.get("max_tokens", 0)),
            presence_penalty=float(cfg.get("presence_penalty", 0.0)),
            frequency_penalty=float(cfg.get("frequency_penalty", 0.0)),
        )
        return Chat(
            id=data["id"],
            user_id=data["user_id"],
            initial_system_message=self._to_message(data["initial_system_message"]),
            config=config,
            messages=[self._to_message(m) for m in data.get("messages") or []],
            erased_messages=[self._to_message(m) for m in data.get("erased_messages") or []],
            status=data.get("status", "active"),
            token_usage=int(data.get("token_usage", 0)),
        )

    @staticmethod
    def _to_message(data: Dict[str, Any]) -> Message:
        return Message(
            id=data["id"],
            role=data["role"],
            content=data.get("content") or "",
            tokens=int(data.get("tokens", 0)),
            model=Model(name=data["model"]["name"], max_tokens=int(data["model"]["max_tokens"])),
            created_at=datetime.fromisoformat(str(data["created_at"]).replace("Z", "+00:00")),
        )
