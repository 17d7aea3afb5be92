from chat_core.config.settings import ChatSettings


def test_settings_read_yaml_config(tmp_path, monkeypatch):
    cfg = tmp_path / "config.yaml"
    cfg.write_text(
        "default_provider: kimi\n"
        "default_model: moonshot-v1-8k\n"
        "model_max_tokens: 8192\n"
        "stop: ['###']\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("CHAT_CONFIG_FILE", str(cfg))
    monkeypatch.delenv("DEFAULT_PROVIDER", raising=False)
    monkeypatch.delenv("DEFAULT_MODEL", raising=False)

    s = ChatSettings()
    assert s.default_provider == "kimi"
    assert s.default_model == "moonshot-v1-8k"
    assert s.model_max_tokens == 8192
    assert s.stop == ["###"]


def test_env_overrides_yaml(tmp_path, monkeypatch):
    cfg = tmp_path / "config.yaml"
    cfg.write_text("default_model: from-yaml\n", encoding="utf-8")
    monkeypatch.setenv("CHAT_CONFIG_FILE", str(cfg))
    monkeypatch.setenv("DEFAULT_MODEL", "from-env")
    assert ChatSettings().default_model == "from-env"


def test_settings_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("CHAT_CONFIG_FILE", str(tmp_path / "missing.yaml"))
    monkeypatch.chdir(tmp_path)
    s = ChatSettings(_env_file=None)
    assert s.storage_backend in ("json", "memory")
    assert 0.0 <= s.temperature <= 2.0
    assert s.initial_system_message
