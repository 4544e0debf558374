"""RelayerConfig 测试

测试内容：
1. 按环境选取默认值 + 环境变量覆盖
2. 非法数值覆盖保留默认值
3. validate_config 问题列表
4. config_summary 脱敏
"""

from decimal import Decimal

import pytest
from brickvault.core.config import (
    ConfigValidationError,
    ConversionConfig,
    EvmConfig,
    MonitoringConfig,
    RelayerConfig,
    StacksConfig,
    config_summary,
    ensure_valid_config,
    load_relayer_config,
    validate_config,
)
from pydantic import SecretStr, ValidationError

VALID_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"


def _configured(**overrides) -> RelayerConfig:
    base = {
        "environment": "staging",
        "stacks": StacksConfig(contract_address="SP000000000000000000002Q6VF78.gateway"),
        "evm": EvmConfig(
            manager_address="0x2222222222222222222222222222222222222222",
            private_key=SecretStr(VALID_KEY),
        ),
    }
    base.update(overrides)
    return RelayerConfig(**base)


class TestLoadConfig:
    """环境加载"""

    def test_development_defaults(self):
        config = load_relayer_config({})
        assert config.environment == "development"
        assert config.monitoring.interval_s == 5.0
        assert config.monitoring.max_retries == 3
        assert config.monitoring.retry_delay_s == 5.0
        assert config.monitoring.batch_size == 10
        assert config.monitoring.timeout_s == 30.0
        assert config.stacks.min_confirmations == 6
        assert config.evm.min_confirmations == 2
        assert config.scale_factor == 10**12

    def test_production_defaults(self):
        config = load_relayer_config({"BRICKVAULT_ENV": "production"})
        assert config.monitoring.interval_s == 2.0
        assert config.monitoring.max_retries == 10
        assert config.monitoring.retry_delay_s == 1.0
        assert config.monitoring.batch_size == 50
        assert config.monitoring.timeout_s == 60.0
        assert config.stacks.network == "mainnet"

    def test_env_overrides(self):
        config = load_relayer_config(
            {
                "BRICKVAULT_ENV": "test",
                "EVM_RPC_URL": "http://rpc.local:8545",
                "MONITORING_MAX_RETRIES": "7",
                "STAGE_ACK_TIMEOUT_S": "12.5",
                "CONVERSION_ENABLED": "true",
                "CONVERSION_FIXED_RATE": "0.5",
                "BRICKVAULT_AUTOSTART": "yes",
            }
        )
        assert config.environment == "test"
        assert config.evm.rpc_url == "http://rpc.local:8545"
        assert config.monitoring.max_retries == 7
        assert config.monitoring.ack_timeout_s == 12.5
        assert config.conversion.enabled is True
        assert config.conversion.fixed_rate == Decimal("0.5")
        assert config.autostart is True
        # 未覆盖字段保留 test 环境默认值
        assert config.monitoring.batch_size == 5

    def test_invalid_number_keeps_default(self):
        config = load_relayer_config({"MONITORING_BATCH_SIZE": "lots"})
        assert config.monitoring.batch_size == 10

    def test_unknown_environment(self):
        with pytest.raises(ConfigValidationError):
            load_relayer_config({"BRICKVAULT_ENV": "qa"})

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("BRICKVAULT_ENV", "staging")
        monkeypatch.setenv("BRICKVAULT_DB_PATH", "/tmp/brickvault-test.db")
        config = load_relayer_config()
        assert config.environment == "staging"
        assert config.storage.db_path == "/tmp/brickvault-test.db"

    def test_frozen(self):
        config = load_relayer_config({})
        with pytest.raises(ValidationError):
            config.autostart = True


class TestValidateConfig:
    """启动校验"""

    def test_valid(self):
        assert validate_config(_configured()) == []
        assert ensure_valid_config(_configured()).environment == "staging"

    def test_placeholders_rejected(self):
        problems = validate_config(load_relayer_config({"BRICKVAULT_ENV": "staging"}))
        assert "EVM private key 未配置" in problems
        assert "EVM manager 合约地址未配置" in problems
        assert "Stacks gateway 合约地址未配置" in problems

    def test_test_environment_allows_placeholders(self):
        assert validate_config(load_relayer_config({"BRICKVAULT_ENV": "test"})) == []

    def test_production_requires_mainnet(self):
        problems = validate_config(_configured(environment="production"))
        assert "production 环境 EVM 必须使用 mainnet" in problems

    def test_monitoring_bounds(self):
        problems = validate_config(
            _configured(
                monitoring=MonitoringConfig(
                    interval_s=0.5,
                    max_retries=0,
                    retry_delay_s=0.01,
                    backoff_multiplier=0.5,
                    max_retry_delay_s=0.001,
                )
            )
        )
        assert len(problems) == 5

    def test_conversion_requires_rate(self):
        problems = validate_config(_configured(conversion=ConversionConfig(enabled=True)))
        assert problems == ["启用换算时必须提供汇率"]

    def test_ensure_raises_with_all_problems(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            ensure_valid_config(load_relayer_config({"BRICKVAULT_ENV": "staging"}))
        assert len(exc_info.value.problems) == 3


class TestConfigSummary:
    def test_secrets_masked(self):
        summary = config_summary(_configured())
        assert summary["evm"]["private_key"] == "***" + VALID_KEY[-4:]
        assert VALID_KEY not in str(summary)
        assert summary["stacks"]["signer_api_key"] == ""
        assert summary["monitoring"]["max_retries"] == 3
