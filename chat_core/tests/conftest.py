import pytest


@pytest.fixture(autouse=True)
def word_token_counter(monkeypatch):
    """用按空格分词的计数替代 tiktoken，测试不依赖编码文件下载。"""

    monkeypatch.setattr("chat_core.domain.chat.count_tokens", lambda text, model_name: len(text.split()))
