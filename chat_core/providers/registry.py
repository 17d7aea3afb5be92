"""Provider 配置。

所有支持的厂商都实现 OpenAI 兼容的 chat/completions 流式接口，
差异只在默认 base_url 以及从 Settings 中读取哪两个字段。
模型名由会话配置直接给出，不在这里做映射。"""

from dataclasses import dataclass
from typing import Mapping

from chat_core.domain.exceptions import ValidationError


@dataclass(frozen=True)
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    api_key_field: str
    base_url_field: str


OPENAI_CONFIG = ProviderConfig(
    name="openai",
    base_url="https://api.openai.com/v1",
    api_key_field="openai_api_key",
    base_url_field="openai_base_url",
)

KIMI_CONFIG = ProviderConfig(
    name="kimi",
    base_url="https://api.moonshot.cn/v1",
    api_key_field="kimi_api_key",
    base_url_field="kimi_base_url",
)

GLM_CONFIG = ProviderConfig(
    name="glm",
    base_url="https://open.bigmodel.cn/api/paas/v4",
    api_key_field="glm_api_key",
    base_url_field="glm_base_url",
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "openai": OPENAI_CONFIG,
    "kimi": KIMI_CONFIG,
    "glm": GLM_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise ValidationError(code="UNKNOWN_PROVIDER", message=f"Unknown provider: {name!r}")
