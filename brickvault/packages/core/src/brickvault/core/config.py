"""RelayerConfig -- 不可变配置 + 环境加载 + 启动校验

按环境（development / staging / production / test）选取默认值，再叠加进程环境变量覆盖。
load_relayer_config() 是唯一读取进程环境的位置，构造出的 RelayerConfig 冻结后
按引用传入各组件，组件内部不再读取环境变量。
"""

import os
from collections.abc import Callable, Mapping
from decimal import Decimal, InvalidOperation
from typing import Any, Literal

import structlog
from pydantic import BaseModel, ConfigDict, Field, SecretStr

log = structlog.get_logger()

Environment = Literal["development", "staging", "production", "test"]

# 链常量
STACKS_TOKEN_DECIMALS = 6
EVM_TOKEN_DECIMALS = 18
MIN_DEPOSIT_AMOUNT = 1_000_000
DEFAULT_EVM_GAS_LIMIT = 500_000

# 占位值标记（默认配置中的示例地址/密钥）
_PLACEHOLDER_MARKERS = ("[", "your-", "changeme", "placeholder")


class ConfigValidationError(Exception):
    """配置校验失败，problems 列出全部问题"""

    def __init__(self, problems: list[str]) -> None:
        super().__init__("配置校验失败: " + "; ".join(problems))
        self.problems = problems


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class StacksConfig(_Frozen):
    """Stacks（来源链）配置"""

    network: Literal["mainnet", "testnet", "devnet"] = Field(default="testnet")
    api_url: str = Field(default="https://api.testnet.hiro.so", description="Stacks API 基础 URL")
    contract_address: str = Field(
        default="SP[DEV-CONTRACT].brick-vault-gateway",
        description="gateway 合约标识 <address>.<name>",
    )
    signer_url: str = Field(
        default="http://localhost:3999",
        description="交易签名代理地址（代理持有 Stacks 私钥）",
    )
    signer_api_key: SecretStr = Field(default=SecretStr(""), description="签名代理访问密钥")
    min_confirmations: int = Field(default=6, ge=0, description="最小确认深度")
    decimals: int = Field(default=STACKS_TOKEN_DECIMALS, ge=0)
    min_deposit_amount: int = Field(default=MIN_DEPOSIT_AMOUNT, ge=0, description="最小存入额（原生精度）")
    start_block: int | None = Field(default=None, ge=0, description="无游标时的起始区块")

    @property
    def contract_principal(self) -> str:
        return self.contract_address.split(".", 1)[0]

    @property
    def contract_name(self) -> str:
        parts = self.contract_address.split(".", 1)
        return parts[1] if len(parts) == 2 else ""


class EvmConfig(_Frozen):
    """EVM（目标链）配置"""

    network: Literal["mainnet", "sepolia", "polygon", "arbitrum", "localhost"] = Field(
        default="sepolia"
    )
    rpc_url: str = Field(default="http://localhost:8545", description="JSON-RPC 地址")
    manager_address: str = Field(
        default="0x[DEV-MANAGER-ADDRESS]", description="StacksCrossChainManager 合约地址"
    )
    private_key: SecretStr = Field(default=SecretStr("0x[DEV-EVM-KEY]"), description="relayer 私钥")
    gas_limit: int = Field(default=DEFAULT_EVM_GAS_LIMIT, ge=21_000)
    min_confirmations: int = Field(default=2, ge=0, description="最小确认深度")
    decimals: int = Field(default=EVM_TOKEN_DECIMALS, ge=0)
    start_block: int | None = Field(default=None, ge=0, description="无游标时的起始区块")


class MonitoringConfig(_Frozen):
    """轮询 / 重试 / 超时配置（单位：秒）"""

    interval_s: float = Field(default=5.0, gt=0, description="轮询间隔")
    max_retries: int = Field(default=3, ge=0)
    retry_delay_s: float = Field(default=2.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, gt=0)
    max_retry_delay_s: float = Field(default=300.0, ge=0)
    batch_size: int = Field(default=10, ge=1, description="单次轮询最多扫描区块数")
    timeout_s: float = Field(default=30.0, gt=0, description="单次 RPC 调用超时")
    ack_timeout_s: float = Field(default=600.0, gt=0, description="阶段确认等待窗口")
    audit_interval_s: float = Field(default=60.0, gt=0, description="超时检查 + lockbox 审计间隔")
    lookback_blocks: int = Field(default=10, ge=0)
    max_concurrency: int = Field(default=8, ge=1)
    shutdown_grace_s: float = Field(default=10.0, ge=0)


class ConversionConfig(_Frozen):
    """资产换算（如 sBTC -> USD），仅在 enabled 时生效"""

    enabled: bool = False
    fixed_rate: Decimal | None = Field(default=None, gt=0, description="固定汇率（目标/来源）")


class LoggingConfig(_Frozen):
    level: str = "INFO"
    format: Literal["dev", "json"] = "dev"
    buffer_size: int = Field(default=1000, ge=1, description="内存日志缓冲条数")


class StorageConfig(_Frozen):
    db_path: str = "data/sqlite/brickvault.db"


class RelayerConfig(_Frozen):
    """Relayer 全量配置 -- 启动时构造一次，之后只读"""

    environment: Environment = "development"
    autostart: bool = False
    stacks: StacksConfig = Field(default_factory=StacksConfig)
    evm: EvmConfig = Field(default_factory=EvmConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    conversion: ConversionConfig = Field(default_factory=ConversionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @property
    def scale_factor(self) -> int:
        """来源精度 -> 目标精度的缩放倍数（6 -> 18 为 10^12）"""
        return 10 ** max(self.evm.decimals - self.stacks.decimals, 0)


# 各环境默认值（在模型默认值基础上覆盖）
DEFAULT_ENVIRONMENTS: dict[str, dict[str, Any]] = {
    "test": {
        "stacks": {
            "contract_address": "SP[TEST-CONTRACT].brick-vault-gateway",
            "min_confirmations": 0,
        },
        "evm": {
            "manager_address": "0x[TEST-MANAGER-ADDRESS]",
            "private_key": "0x[TEST-EVM-KEY]",
            "gas_limit": 800_000,
            "min_confirmations": 0,
        },
        "monitoring": {
            "interval_s": 1.0,
            "max_retries": 3,
            "retry_delay_s": 0.1,
            "batch_size": 5,
            "timeout_s": 5.0,
            "ack_timeout_s": 30.0,
        },
        "logging": {"level": "DEBUG"},
        "storage": {"db_path": "data/test/brickvault.db"},
    },
    "development": {
        "evm": {"gas_limit": 800_000},
        "monitoring": {
            "interval_s": 5.0,
            "max_retries": 3,
            "retry_delay_s": 5.0,
            "batch_size": 10,
            "timeout_s": 30.0,
        },
        "logging": {"level": "DEBUG"},
    },
    "staging": {
        "stacks": {"contract_address": "SP[STAGING-CONTRACT].brick-vault-gateway"},
        "evm": {
            "rpc_url": "https://sepolia.infura.io/v3/[STAGING-INFURA-KEY]",
            "manager_address": "0x[STAGING-MANAGER-ADDRESS]",
            "private_key": "0x[STAGING-EVM-KEY]",
            "gas_limit": 800_000,
        },
        "monitoring": {
            "interval_s": 3.0,
            "max_retries": 5,
            "retry_delay_s": 1.5,
            "batch_size": 20,
            "timeout_s": 45.0,
        },
        "logging": {"level": "INFO", "format": "json"},
    },
    "production": {
        "stacks": {
            "network": "mainnet",
            "api_url": "https://api.hiro.so",
            "contract_address": "SP[PROD-CONTRACT].brick-vault-gateway",
        },
        "evm": {
            "network": "mainnet",
            "rpc_url": "https://mainnet.infura.io/v3/[PROD-INFURA-KEY]",
            "manager_address": "0x[PROD-MANAGER-ADDRESS]",
            "private_key": "",
            "gas_limit": 1_000_000,
        },
        "monitoring": {
            "interval_s": 2.0,
            "max_retries": 10,
            "retry_delay_s": 1.0,
            "batch_size": 50,
            "timeout_s": 60.0,
        },
        "logging": {"level": "WARNING", "format": "json"},
    },
}


def _parse_bool(val: str) -> bool:
    lowered = val.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {val}")


def _parse_decimal(val: str) -> Decimal:
    try:
        return Decimal(val)
    except InvalidOperation as e:
        raise ValueError(f"not a decimal: {val}") from e


# 环境变量 -> (配置段, 字段, 解析函数)
_ENV_OVERRIDES: list[tuple[str, str, str, Callable[[str], Any]]] = [
    ("STACKS_NETWORK", "stacks", "network", str),
    ("STACKS_API_URL", "stacks", "api_url", str),
    ("STACKS_CONTRACT_ADDRESS", "stacks", "contract_address", str),
    ("STACKS_SIGNER_URL", "stacks", "signer_url", str),
    ("STACKS_SIGNER_KEY", "stacks", "signer_api_key", str),
    ("STACKS_MIN_CONFIRMATIONS", "stacks", "min_confirmations", int),
    ("STACKS_START_BLOCK", "stacks", "start_block", int),
    ("MIN_DEPOSIT_AMOUNT", "stacks", "min_deposit_amount", int),
    ("EVM_NETWORK", "evm", "network", str),
    ("EVM_RPC_URL", "evm", "rpc_url", str),
    ("EVM_MANAGER_ADDRESS", "evm", "manager_address", str),
    ("EVM_PRIVATE_KEY", "evm", "private_key", str),
    ("EVM_GAS_LIMIT", "evm", "gas_limit", int),
    ("EVM_MIN_CONFIRMATIONS", "evm", "min_confirmations", int),
    ("EVM_START_BLOCK", "evm", "start_block", int),
    ("MONITORING_INTERVAL_S", "monitoring", "interval_s", float),
    ("MONITORING_MAX_RETRIES", "monitoring", "max_retries", int),
    ("MONITORING_RETRY_DELAY_S", "monitoring", "retry_delay_s", float),
    ("MONITORING_BACKOFF_MULTIPLIER", "monitoring", "backoff_multiplier", float),
    ("MONITORING_MAX_RETRY_DELAY_S", "monitoring", "max_retry_delay_s", float),
    ("MONITORING_BATCH_SIZE", "monitoring", "batch_size", int),
    ("MONITORING_TIMEOUT_S", "monitoring", "timeout_s", float),
    ("MONITORING_MAX_CONCURRENCY", "monitoring", "max_concurrency", int),
    ("STAGE_ACK_TIMEOUT_S", "monitoring", "ack_timeout_s", float),
    ("CONVERSION_ENABLED", "conversion", "enabled", _parse_bool),
    ("CONVERSION_FIXED_RATE", "conversion", "fixed_rate", _parse_decimal),
    ("BRICKVAULT_LOG_LEVEL", "logging", "level", str),
    ("BRICKVAULT_LOG_FORMAT", "logging", "format", str),
    ("BRICKVAULT_LOG_BUFFER_SIZE", "logging", "buffer_size", int),
    ("BRICKVAULT_DB_PATH", "storage", "db_path", str),
]


def _merge(base: dict[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """两层字典合并（配置段 -> 字段）"""
    merged = {key: dict(value) if isinstance(value, dict) else value for key, value in base.items()}
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def load_relayer_config(environ: Mapping[str, str] | None = None) -> RelayerConfig:
    """从环境变量加载 Relayer 配置

    BRICKVAULT_ENV 选择默认配置（默认 development），其余变量见 _ENV_OVERRIDES。
    数值解析失败时记录 warning 并保留默认值，不阻塞启动。

    Args:
        environ: 环境变量映射，默认 os.environ

    Returns:
        冻结的 RelayerConfig
    """
    env = os.environ if environ is None else environ

    environment = env.get("BRICKVAULT_ENV", "development")
    if environment not in DEFAULT_ENVIRONMENTS:
        raise ConfigValidationError(
            [f"未知环境 {environment}，可选: {', '.join(DEFAULT_ENVIRONMENTS)}"]
        )

    data: dict[str, Any] = _merge({"environment": environment}, DEFAULT_ENVIRONMENTS[environment])

    overrides: dict[str, dict[str, Any]] = {}
    for env_var, section, field, parser in _ENV_OVERRIDES:
        if (val := env.get(env_var)) is None or val == "":
            continue
        try:
            overrides.setdefault(section, {})[field] = parser(val)
        except ValueError:
            log.warning(
                "invalid_config_value",
                env_var=env_var,
                value=val,
            )
            # 使用默认值，不阻塞启动

    if val := env.get("BRICKVAULT_AUTOSTART"):
        try:
            data["autostart"] = _parse_bool(val)
        except ValueError:
            log.warning("invalid_config_value", env_var="BRICKVAULT_AUTOSTART", value=val)

    return RelayerConfig.model_validate(_merge(data, overrides))


def _is_placeholder(value: str) -> bool:
    lowered = value.lower()
    return not value or any(marker in lowered for marker in _PLACEHOLDER_MARKERS)


def validate_config(config: RelayerConfig) -> list[str]:
    """校验配置，返回问题列表（空列表表示通过）"""
    problems: list[str] = []

    if config.environment != "test":
        if _is_placeholder(config.evm.private_key.get_secret_value()):
            problems.append("EVM private key 未配置")
        if _is_placeholder(config.evm.manager_address):
            problems.append("EVM manager 合约地址未配置")
        if _is_placeholder(config.stacks.contract_address):
            problems.append("Stacks gateway 合约地址未配置")

    if "." not in config.stacks.contract_address:
        problems.append("Stacks 合约地址格式应为 <address>.<name>")

    if config.environment == "production":
        if config.stacks.network != "mainnet":
            problems.append("production 环境 Stacks 必须使用 mainnet")
        if config.evm.network != "mainnet":
            problems.append("production 环境 EVM 必须使用 mainnet")

    monitoring = config.monitoring
    if monitoring.interval_s < 1.0:
        problems.append("轮询间隔至少 1 秒")
    if monitoring.max_retries < 1:
        problems.append("max_retries 至少为 1")
    if monitoring.retry_delay_s < 0.1:
        problems.append("retry_delay 至少 0.1 秒")
    if monitoring.backoff_multiplier < 1.0:
        problems.append("backoff_multiplier 不能小于 1")
    if monitoring.max_retry_delay_s < monitoring.retry_delay_s:
        problems.append("max_retry_delay 不能小于 retry_delay")

    if config.evm.decimals < config.stacks.decimals:
        problems.append("目标链精度不能小于来源链精度")
    if config.conversion.enabled and config.conversion.fixed_rate is None:
        problems.append("启用换算时必须提供汇率")

    return problems


def ensure_valid_config(config: RelayerConfig) -> RelayerConfig:
    """校验配置，失败时抛出 ConfigValidationError"""
    problems = validate_config(config)
    if problems:
        raise ConfigValidationError(problems)
    return config


def _mask(secret: str) -> str:
    if not secret:
        return ""
    return "***" + secret[-4:]


def config_summary(config: RelayerConfig) -> dict[str, Any]:
    """可对外展示的配置摘要（密钥脱敏）"""
    return {
        "environment": config.environment,
        "stacks": {
            "network": config.stacks.network,
            "api_url": config.stacks.api_url,
            "contract_address": config.stacks.contract_address,
            "signer_url": config.stacks.signer_url,
            "signer_api_key": _mask(config.stacks.signer_api_key.get_secret_value()),
            "min_confirmations": config.stacks.min_confirmations,
        },
        "evm": {
            "network": config.evm.network,
            "rpc_url": config.evm.rpc_url,
            "manager_address": config.evm.manager_address,
            "private_key": _mask(config.evm.private_key.get_secret_value()),
            "gas_limit": config.evm.gas_limit,
            "min_confirmations": config.evm.min_confirmations,
        },
        "monitoring": config.monitoring.model_dump(),
        "conversion": {
            "enabled": config.conversion.enabled,
            "fixed_rate": str(config.conversion.fixed_rate) if config.conversion.fixed_rate else None,
        },
        "logging": config.logging.model_dump(),
    }
