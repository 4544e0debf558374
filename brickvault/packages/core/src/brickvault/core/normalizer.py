"""Event Normalizer -- RawChainEvent -> CanonicalEvent | DropSignal

纯函数，无 I/O、无日志。按来源链选取 tagged union 解析 body，
不匹配任何已知标签或字段校验失败的事件返回 DropSignal。
金额保持来源链原生精度。
"""

from pydantic import ValidationError

from .models import (
    BODY_ADAPTERS,
    CanonicalEvent,
    ChainId,
    DropSignal,
    EventKind,
    EvmStageAckLog,
    EvmStageChangeLog,
    EvmStageOverrideLog,
    RawChainEvent,
    StacksDepositPrint,
    StacksStageAckPrint,
    StacksStageTransitionPrint,
    StacksWithdrawalPrint,
    compute_message_id,
)


def _drop(raw: RawChainEvent, reason: str) -> DropSignal:
    return DropSignal(reason=reason, chain=raw.chain, tx_hash=raw.tx_hash, index=raw.index)


def _summarize_errors(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg', 'invalid')}" if location else first.get("msg", "invalid")


def normalize(raw: RawChainEvent, source_chain: ChainId) -> CanonicalEvent | DropSignal:
    """规范化链原始事件

    Args:
        raw: 链适配器产出的原始事件
        source_chain: 调用方期望的来源链

    Returns:
        CanonicalEvent，或说明丢弃原因的 DropSignal
    """
    if raw.chain != source_chain:
        return _drop(raw, f"chain mismatch: expected {source_chain}, got {raw.chain}")

    tag = raw.body.get("event")
    if not isinstance(tag, str) or not tag:
        return _drop(raw, "missing event tag")

    try:
        body = BODY_ADAPTERS[source_chain].validate_python(raw.body)
    except ValidationError as e:
        return _drop(raw, f"unrecognized {tag} payload ({_summarize_errors(e)})")

    base = {
        "id": compute_message_id(raw.chain, raw.tx_hash, raw.index),
        "source_chain": raw.chain,
        "source_tx_hash": raw.tx_hash,
        "source_block_height": raw.block_height,
        "log_index": raw.index,
    }

    match body:
        case StacksDepositPrint() | StacksWithdrawalPrint():
            kind = EventKind.DEPOSIT if isinstance(body, StacksDepositPrint) else EventKind.WITHDRAWAL
            return CanonicalEvent(
                **base,
                kind=kind,
                property_id=body.property_id,
                principal=body.user,
                counterparty_address=body.evm_custodian or None,
                amount=body.amount,
            )
        case StacksStageTransitionPrint():
            return CanonicalEvent(
                **base,
                kind=EventKind.STAGE_CHANGE,
                property_id=body.property_id,
                stage=body.stage,
                admin_override=body.override,
            )
        case EvmStageChangeLog() | EvmStageOverrideLog():
            return CanonicalEvent(
                **base,
                kind=EventKind.STAGE_CHANGE,
                property_id=body.property_id,
                stage=body.new_stage,
                admin_override=isinstance(body, EvmStageOverrideLog),
            )
        case StacksStageAckPrint() | EvmStageAckLog():
            return CanonicalEvent(
                **base,
                kind=EventKind.STAGE_ACKNOWLEDGMENT,
                property_id=body.property_id,
                stage=body.stage,
            )

    return _drop(raw, f"unhandled event tag {tag}")
