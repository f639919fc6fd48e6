from tenantchat.config import ChatRuntimeConfig, apply_config_data, apply_environment


def test_chat_and_logging_tables_are_applied() -> None:
    data = {
        "chat": {
            "port": "9000",
            "allowed_origins": ["https://app.example.com"],
            "mongo_uri": "",
            "config_path": "/ignored",
            "unknown_key": 1,
        },
        "logging": {"level": "DEBUG", "lib_level": "ERROR", "file": ""},
    }
    cfg = apply_config_data(ChatRuntimeConfig(config_path="/etc/tc.toml"), data)
    assert cfg.port == 9000
    assert cfg.allowed_origins == ("https://app.example.com",)
    assert cfg.mongo_uri is None
    assert cfg.config_path == "/etc/tc.toml"
    assert cfg.log_level == "DEBUG"
    assert cfg.log_lib_level == "ERROR"
    assert cfg.log_file is None


def test_environment_overrides_secrets() -> None:
    cfg = ChatRuntimeConfig(jwt_secret="from-file")
    cfg = apply_environment(
        cfg, {"TENANTCHAT_JWT_SECRET": "from-env", "MONGO_URI": "mongodb://db:27017"}
    )
    assert cfg.jwt_secret == "from-env"
    assert cfg.mongo_uri == "mongodb://db:27017"

    assert apply_environment(cfg, {}) is cfg
