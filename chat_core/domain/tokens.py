"""消息 token 计数。

优先使用 tiktoken 按模型名选择编码；未知模型退回 cl100k_base。
编码文件无法加载时（例如离线环境）按约 4 字符 / token 估算。
"""

from functools import lru_cache
from typing import Optional

import tiktoken

from chat_core.infrastructure.logging.logger import logger


FALLBACK_ENCODING = "cl100k_base"


@lru_cache(maxsize=32)
def _encoding_for(model_name: str) -> Optional["tiktoken.Encoding"]:
    try:
        try:
            return tiktoken.encoding_for_model(model_name)
        except KeyError:
            # 未知模型名
            return tiktoken.get_encoding(FALLBACK_ENCODING)
    except Exception as exc:
        logger.warning(
            "tiktoken encoding unavailable, using estimate",
            extra={"extra": {"model": model_name, "error": str(exc)}},
        )
        return None


def count_tokens(text: str, model_name: str) -> int:
    """统计 text 在 model_name 下的 token 数。"""

    if not text:
        return 0
    enc = _encoding_for(model_name)
    if enc is None:
        return max(1, len(text) // 4)
    return len(enc.encode(text))
