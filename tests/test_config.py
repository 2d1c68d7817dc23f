import pytest
from pydantic import ValidationError

from toolgate.config import GatewayConfig, RateLimitRule, load_config


def test_defaults_fill_every_section() -> None:
    cfg = GatewayConfig.model_validate({})

    assert cfg.stream_keepalive_seconds == 1.0
    assert cfg.plugin_call_timeout_seconds == 30.0
    assert cfg.circuit_breaker.failure_threshold == 5
    assert cfg.circuit_breaker.recovery_timeout_seconds == 30.0
    assert cfg.retry.max_retries == 3
    assert cfg.orchestration.max_call_depth == 10
    assert cfg.security.allowlist is None
    assert cfg.logging.level == "INFO"
    assert cfg.plugins is None


@pytest.mark.parametrize(
    ("spec", "limit", "window"),
    [("10/minute", 10, 60.0), ("3/min", 3, 60.0), ("100 / hour", 100, 3600.0), ("5/s", 5, 1.0)],
)
def test_rate_limit_rule_parse(spec: str, limit: int, window: float) -> None:
    rule = RateLimitRule.parse(spec)
    assert rule.limit == limit
    assert rule.window_seconds == window


@pytest.mark.parametrize("spec", ["ten/minute", "10/fortnight", "0/minute", "10"])
def test_rate_limit_rule_rejects_invalid_specs(spec: str) -> None:
    with pytest.raises(ValueError):
        RateLimitRule.parse(spec)


def test_security_rate_limits_accept_strings() -> None:
    cfg = GatewayConfig.model_validate({"security": {"rate_limits": {"WeatherPlugin": "3/minute"}}})
    assert cfg.security.rate_limits["WeatherPlugin"] == RateLimitRule(limit=3, window_seconds=60.0)


def test_unknown_top_level_keys_are_rejected() -> None:
    with pytest.raises(ValidationError):
        GatewayConfig.model_validate({"upstream_base_url": "http://127.0.0.1:10000"})


def test_http_plugin_requires_url_and_names_are_checked() -> None:
    with pytest.raises(ValidationError):
        GatewayConfig.model_validate({"plugins": [{"name": "Remote", "handler": "http"}]})
    with pytest.raises(ValidationError):
        GatewayConfig.model_validate({"plugins": [{"name": "bad name", "handler": "builtin:time.now"}]})
    with pytest.raises(ValidationError):
        GatewayConfig.model_validate({"plugins": [{"name": "Shell", "handler": "subprocess"}]})


def test_default_provider_must_exist() -> None:
    with pytest.raises(ValidationError):
        GatewayConfig.model_validate(
            {"default_provider": "missing", "providers": [{"name": "local", "base_url": "http://x:1"}]}
        )


def test_load_config_applies_environment_overrides(tmp_path, monkeypatch) -> None:
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        "providers:\n"
        "  - name: local\n"
        "    base_url: http://127.0.0.1:10000\n"
        "logging:\n"
        "  level: INFO\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("TOOLGATE_PROVIDER_MODEL", "env-model")
    monkeypatch.setenv("TOOLGATE_MAX_CALL_DEPTH", "4")
    monkeypatch.setenv("TOOLGATE_LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("TOOLGATE_LOG_JSON", "true")

    cfg = load_config(str(config_file))

    assert cfg.provider().default_model == "env-model"
    assert cfg.provider().base_url == "http://127.0.0.1:10000"
    assert cfg.orchestration.max_call_depth == 4
    assert cfg.logging.level == "DEBUG"
    assert cfg.logging.json_logs is True


def test_load_config_without_file_builds_provider_from_environment(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("TOOLGATE_PROVIDER_BASE_URL", "http://127.0.0.1:10000")

    cfg = load_config(str(tmp_path / "missing.yaml"))

    assert cfg.default_provider == "default"
    assert cfg.provider("default").base_url == "http://127.0.0.1:10000"
