"""Lockbox 不变量 -- 来源链锁定量与目标链铸造量守恒

locked_source × scale == minted_destination + in_flight_source × scale
目标链铸造量取链上读数；账本只提供锁定量与在途 / 失败金额。
在途（Pending / Submitted / FailedRetryable）消息可能已在目标链生效但尚未记账，
每笔只能全额生效或未生效，偏差必须落在这一区间内；
目标链铸造量超过锁定量与未完成取出之和（双铸）在任何情况下都是违例。
"""

from .models import CustodialBalanceView, LedgerTotals, LockboxReport, LockboxStatus


def build_view_from_ledger(
    totals: LedgerTotals,
    scale_factor: int,
    minted_destination: int | None = None,
) -> CustodialBalanceView:
    """由账本汇总构造 CustodialBalanceView

    locked_source 为所有已观察（未丢弃）的存入减取出。
    minted_destination 传入目标链读数；为 None 时退回账本中已 Confirmed 记录
    实际写入目标链的金额（仅在目标链不提供余额查询时使用）。
    """
    if minted_destination is None:
        minted_destination = totals.confirmed_destination
    return CustodialBalanceView(
        property_id=totals.property_id,
        locked_source=totals.observed_source,
        minted_destination=minted_destination,
        in_flight_source=totals.in_flight_source,
        in_flight_withdrawal_source=totals.in_flight_withdrawal_source,
        stuck_source=totals.stuck_source,
        scale_factor=scale_factor,
    )


def check_lockbox_invariant(view: CustodialBalanceView) -> LockboxReport:
    """检查 lockbox 不变量

    Returns:
        LockboxReport:
        - SETTLED: 无在途，锁定与铸造完全相等
        - IN_FLIGHT: 偏差完全由在途金额解释
        - STUCK: 存在 FailedPermanent 金额，需运维介入
        - VIOLATED: 偏差无法解释，或铸造超过锁定
    """
    scale = view.scale_factor
    deposits, withdrawals = view.in_flight_deposits, view.in_flight_withdrawals
    expected = (view.locked_source - view.in_flight_source - view.stuck_source) * scale
    discrepancy = view.minted_destination - expected

    report = {
        "property_id": view.property_id,
        "expected_destination": expected,
        "minted_destination": view.minted_destination,
        "discrepancy": discrepancy,
    }

    # 在途/失败的取出尚未扣减目标链余额，上限需加回
    ceiling = (view.locked_source - withdrawals - min(view.stuck_source, 0)) * scale
    if view.minted_destination > ceiling:
        return LockboxReport(
            **report,
            status=LockboxStatus.VIOLATED,
            detail="minted exceeds locked",
        )
    if not withdrawals * scale <= discrepancy <= deposits * scale:
        return LockboxReport(
            **report,
            status=LockboxStatus.VIOLATED,
            detail="unexplained discrepancy",
        )
    if view.stuck_source != 0:
        return LockboxReport(
            **report,
            status=LockboxStatus.STUCK,
            detail=f"{view.stuck_source} source units failed permanently",
        )
    if deposits or withdrawals:
        return LockboxReport(**report, status=LockboxStatus.IN_FLIGHT)
    return LockboxReport(**report, status=LockboxStatus.SETTLED)
