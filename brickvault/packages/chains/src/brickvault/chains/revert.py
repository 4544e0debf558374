"""回滚原因分类

EVM 合约回滚字符串形如 "StacksCrossChainManager: message already processed"，
Stacks 调用失败返回 "(err u104)"，先按 gateway 错误码翻译为文本再分类。
"""

import re
from enum import StrEnum


class RevertClass(StrEnum):
    RETRYABLE = "retryable"
    PERMANENT = "permanent"
    ALREADY_APPLIED = "already_applied"


# brick-vault-gateway 错误码
STACKS_ERROR_CODES: dict[int, str] = {
    101: "not owner",
    102: "invalid amount",
    103: "property not active",
    104: "stage not open",
    105: "insufficient balance",
    107: "contract paused",
    108: "address already registered",
}

_ALREADY_APPLIED_MARKERS = (
    "already processed",
    "already used",
)

_PERMANENT_MARKERS = (
    "address not registered",
    "custodian not found",
    "amount below minimum",
    "invalid amount",
    "not authorized",
    "not owner",
    "invalid stage",
    "stage not open",
    "not in opentofund stage",
    "property not active",
    "address already registered",
)

_CLARITY_ERR = re.compile(r"\(err u(\d+)\)")


def describe_clarity_result(result_repr: str) -> str:
    """把 "(err u104)" 翻译为 "stage not open (err u104)"，未知错误码原样返回"""
    match = _CLARITY_ERR.search(result_repr)
    if match is None:
        return result_repr
    code = int(match.group(1))
    description = STACKS_ERROR_CODES.get(code)
    return f"{description} (err u{code})" if description else result_repr


def classify_revert(reason: str) -> RevertClass:
    """按回滚原因分类；未识别的原因（流动性不足、合约暂停、nonce 过期等）可重试"""
    lowered = describe_clarity_result(reason).lower()
    if any(marker in lowered for marker in _ALREADY_APPLIED_MARKERS):
        return RevertClass.ALREADY_APPLIED
    if any(marker in lowered for marker in _PERMANENT_MARKERS):
        return RevertClass.PERMANENT
    return RevertClass.RETRYABLE


def is_retryable_revert(reason: str) -> bool:
    return classify_revert(reason) == RevertClass.RETRYABLE
