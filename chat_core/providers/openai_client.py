"""OpenAI 兼容 Provider 适配器。

OpenAI、Kimi(Moonshot) 与 GLM(BigModel) 都提供同样形态的 chat/completions 端点：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>
- 流式: stream=true 时以 SSE 的 "data: {...}" 行逐片返回，以 "data: [DONE]" 结束。

本模块负责：

1. 接收统一的 ChatRequest 并转换为请求 JSON。
2. 打开流式 HTTP 连接，连接阶段的网络/限流/服务端错误在 chat_stream 调用时立即抛出。
3. 逐行解析 SSE，产出统一的 ChatStreamChunk；读取阶段的错误统一包装为 StreamError。
"""

import json
from contextlib import ExitStack
from typing import Any, Dict, Iterable, Iterator

import httpx

from chat_core.domain.exceptions import ApiError, NetworkError, RateLimitError, StreamError, ValidationError
from chat_core.domain.models import (
    ChatMessage,
    ChatRequest,
    ChatStreamChoice,
    ChatStreamChunk,
    ChatUsage,
)
from chat_core.providers.registry import ProviderConfig


class OpenAICompatibleClient:
    """OpenAI 兼容接口的流式客户端。

    - name: Provider 名称（取自 ProviderConfig，供日志使用）。
    - chat_stream: 对外统一调用入口，返回 ChatStreamChunk 迭代器。
    """

    def __init__(self, provider_config: ProviderConfig, settings):
        # Settings 里包含 api_key、base_url、超时等配置
        self._provider = provider_config
        self._settings = settings
        self.name = provider_config.name

    def chat_stream(self, req: ChatRequest) -> Iterable[ChatStreamChunk]:
        """打开流式连接并返回增量迭代器。

        Raises:
            ValidationError: 未配置 API Key。
            NetworkError: 建立连接失败。
            RateLimitError / ApiError: 服务端返回 429 / 其他 4xx、5xx。
        """

        api_key = getattr(self._settings, self._provider.api_key_field, None)
        if not api_key:
            raise ValidationError(
                code="MISSING_API_KEY",
                message=f"{self._provider.api_key_field.upper()} not set",
            )
        payload = self._build_payload(req)
        base = getattr(self._settings, self._provider.base_url_field, None) or self._provider.base_url

        stack = ExitStack()
        try:
            client = stack.enter_context(httpx.Client(timeout=self._settings.http_timeout, trust_env=False))
            resp = stack.enter_context(
                client.stream(
                    "POST",
                    f"{base.rstrip('/')}/chat/completions",
                    json=payload,
                    headers={
                        "Authorization": f"Bearer {api_key}",
                        "Content-Type": "application/json",
                        "Accept": "text/event-stream",
                    },
                )
            )
        except httpx.RequestError as e:
            stack.close()
            # 网络错误：DNS 失败、连接超时等
            raise NetworkError(code="NETWORK_ERROR", message=str(e), provider=self.name) from e

        if resp.status_code >= 400:
            try:
                resp.read()
                body = resp.text
            except httpx.HTTPError as e:
                body = str(e)
            finally:
                stack.close()
            if resp.status_code == 429:
                raise RateLimitError(code="RATE_LIMIT", message=f"{self.name} rate limit", provider=self.name)
            raise ApiError(code="API_ERROR", message=body, http_status=resp.status_code, provider=self.name)

        return self._iter_chunks(stack, resp, req)

    def _iter_chunks(self, stack: ExitStack, resp, req: ChatRequest) -> Iterator[ChatStreamChunk]:
        with stack:
            try:
                for line in resp.iter_lines():
                    if not line:
                        continue
                    data_str = line
                    if data_str.startswith("data:"):
                        data_str = data_str[5:].strip()
                    else:
                        data_str = data_str.strip()
                    if not data_str:
                        continue
                    if data_str == "[DONE]":
                        return
                    try:
                        payload_chunk = json.loads(data_str)
                    except json.JSONDecodeError:
                        continue
                    if isinstance(payload_chunk, dict) and payload_chunk.get("error"):
                        raise StreamError(
                            code="STREAM_ERROR",
                            message=self._error_message(payload_chunk["error"]),
                            provider=self.name,
                        )
                    yield self._parse_stream_chunk(payload_chunk, req)
            except httpx.HTTPError as e:
                # 读超时、连接中断等
                raise StreamError(code="STREAM_ERROR", message=str(e), provider=self.name) from e

    def _build_payload(self, req: ChatRequest) -> Dict[str, Any]:
        """将 ChatRequest 转成 chat/completions 所需的请求 JSON。"""

        payload: Dict[str, Any] = {
            "model": req.model,
            "messages": [{"role": m.role, "content": m.content} for m in req.messages],
            "temperature": req.temperature,
            "top_p": req.top_p,
            "presence_penalty": req.presence_penalty,
            "frequency_penalty": req.frequency_penalty,
            "stream": True,
        }
        if req.max_tokens:
            payload["max_tokens"] = req.max_tokens
        if req.stop:
            payload["stop"] = list(req.stop)
        return payload

    def _parse_stream_chunk(self, data: Any, req: ChatRequest) -> ChatStreamChunk:
        """解析流式响应中的单条增量。

        JSON 合法但结构不符（choices/delta/usage 不是对象，content 不是字符串）时抛出 StreamError。
        """

        if not isinstance(data, dict):
            raise self._malformed(f"chunk is not an object: {data!r}")
        choices_raw = data.get("choices") or []
        if not isinstance(choices_raw, list):
            raise self._malformed(f"choices is not a list: {choices_raw!r}")
        choices: list[ChatStreamChoice] = []
        for i, ch in enumerate(choices_raw):
            if not isinstance(ch, dict):
                raise self._malformed(f"choice is not an object: {ch!r}")
            delta_payload = ch.get("delta") or {}
            if not isinstance(delta_payload, dict):
                raise self._malformed(f"delta is not an object: {delta_payload!r}")
            content = delta_payload.get("content") or ""
            if not isinstance(content, str):
                raise self._malformed(f"delta content is not a string: {content!r}")
            choices.append(
                ChatStreamChoice(
                    index=ch.get("index", i),
                    delta=ChatMessage(
                        role=delta_payload.get("role") or "assistant",
                        content=content,
                    ),
                    finish_reason=ch.get("finish_reason"),
                )
            )
        usage_raw = data.get("usage") or {}
        if not isinstance(usage_raw, dict):
            raise self._malformed(f"usage is not an object: {usage_raw!r}")
        usage = None
        if usage_raw:
            usage = ChatUsage(
                prompt_tokens=usage_raw.get("prompt_tokens", 0),
                completion_tokens=usage_raw.get("completion_tokens", 0),
                total_tokens=usage_raw.get("total_tokens", 0),
            )
        return ChatStreamChunk(
            provider=self.name,
            model=req.model,
            choices=choices,
            usage=usage,
            raw=data,
        )

    def _malformed(self, detail: str) -> StreamError:
        return StreamError(code="STREAM_ERROR", message=f"malformed stream chunk: {detail}", provider=self.name)

    @staticmethod
    def _error_message(error: Any) -> str:
        if isinstance(error, dict):
            return str(error.get("message") or error)
        return str(error)
