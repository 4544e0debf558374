"""BrickVault 链适配层 -- Stacks / EVM 客户端、观察器、异常体系"""

from .clarity import ClarityParseError, parse_clarity_repr
from .evm_client import EvmClient
from .exceptions import (
    AlreadyAppliedError,
    AmbiguousResponseError,
    ChainError,
    ChainRevertError,
    DispatchRejectedError,
    RpcUnreachableError,
)
from .observer import ChainObserver
from .protocols import (
    BalanceReader,
    ChainClient,
    ChainReader,
    CustodianDirectory,
    FixedRateProvider,
    LiquiditySource,
    RateProvider,
)
from .revert import RevertClass, classify_revert, describe_clarity_result
from .stacks_client import StacksApiClient

__all__ = [
    # 客户端
    "StacksApiClient",
    "EvmClient",
    "ChainObserver",
    # 接口
    "ChainReader",
    "ChainClient",
    "CustodianDirectory",
    "LiquiditySource",
    "BalanceReader",
    "RateProvider",
    "FixedRateProvider",
    # 异常
    "ChainError",
    "RpcUnreachableError",
    "AmbiguousResponseError",
    "ChainRevertError",
    "AlreadyAppliedError",
    "DispatchRejectedError",
    # 回滚分类 / Clarity 解析
    "RevertClass",
    "classify_revert",
    "describe_clarity_result",
    "ClarityParseError",
    "parse_clarity_repr",
]
