"""Lockbox 不变量测试

locked × scale == minted + in_flight × scale；在途消息可能已在目标链生效，
偏差须落在在途取出与在途存入之间；铸造超过锁定在任何情况下都是违例。
"""

from brickvault.core.lockbox import build_view_from_ledger, check_lockbox_invariant
from brickvault.core.models import CustodialBalanceView, LedgerTotals, LockboxStatus

SCALE = 10**12


def _view(
    locked, minted, in_flight=0, stuck=0, in_flight_withdrawals=None
) -> CustodialBalanceView:
    return CustodialBalanceView(
        property_id=1,
        locked_source=locked,
        minted_destination=minted,
        in_flight_source=in_flight,
        in_flight_withdrawal_source=in_flight_withdrawals,
        stuck_source=stuck,
        scale_factor=SCALE,
    )


class TestLockboxInvariant:
    def test_settled(self):
        report = check_lockbox_invariant(_view(1_000_000, 1_000_000 * SCALE))
        assert report.status == LockboxStatus.SETTLED
        assert report.discrepancy == 0

    def test_in_flight_deposit(self):
        """在途存入：锁定已增加，铸造尚未发生"""
        report = check_lockbox_invariant(_view(3_000_000, 1_000_000 * SCALE, in_flight=2_000_000))
        assert report.status == LockboxStatus.IN_FLIGHT

    def test_in_flight_withdrawal(self):
        """在途取出：锁定已减少，目标链尚未扣减"""
        report = check_lockbox_invariant(
            _view(1_000_000, 2_000_000 * SCALE, in_flight=-1_000_000)
        )
        assert report.status == LockboxStatus.IN_FLIGHT

    def test_stuck(self):
        report = check_lockbox_invariant(_view(2_000_000, 1_000_000 * SCALE, stuck=1_000_000))
        assert report.status == LockboxStatus.STUCK
        assert "1000000" in report.detail

    def test_double_mint_violates(self):
        report = check_lockbox_invariant(_view(1_000_000, 2_000_000 * SCALE))
        assert report.status == LockboxStatus.VIOLATED
        assert report.detail == "minted exceeds locked"
        assert report.discrepancy == 1_000_000 * SCALE

    def test_unexplained_shortfall_violates(self):
        report = check_lockbox_invariant(_view(2_000_000, 1_000_000 * SCALE))
        assert report.status == LockboxStatus.VIOLATED
        assert report.discrepancy == -1_000_000 * SCALE

    def test_landed_in_flight_deposit(self):
        """在途存入已在目标链生效、账本尚未确认：仍在允许区间内"""
        report = check_lockbox_invariant(_view(3_000_000, 3_000_000 * SCALE, in_flight=2_000_000))
        assert report.status == LockboxStatus.IN_FLIGHT
        assert report.discrepancy == 2_000_000 * SCALE

    def test_landed_in_flight_withdrawal(self):
        report = check_lockbox_invariant(
            _view(1_000_000, 1_000_000 * SCALE, in_flight=-1_000_000)
        )
        assert report.status == LockboxStatus.IN_FLIGHT
        assert report.discrepancy == -1_000_000 * SCALE

    def test_mixed_in_flight_uses_both_parts(self):
        """在途存入 2 未生效、在途取出 1 已生效：净额为 1，偏差为 -1"""
        view = _view(
            2_000_000, 0, in_flight=1_000_000, in_flight_withdrawals=-1_000_000
        )
        assert view.in_flight_deposits == 2_000_000
        report = check_lockbox_invariant(view)
        assert report.status == LockboxStatus.IN_FLIGHT
        assert report.discrepancy == -1_000_000 * SCALE

    def test_shortfall_beyond_in_flight_violates(self):
        report = check_lockbox_invariant(
            _view(3_000_000, 1_500_000 * SCALE, in_flight=1_000_000)
        )
        assert report.status == LockboxStatus.VIOLATED
        assert report.detail == "unexplained discrepancy"


class TestViewFromLedger:
    def test_build(self):
        totals = LedgerTotals(
            property_id=5,
            observed_source=3,
            confirmed_source=2,
            confirmed_destination=2 * SCALE,
            in_flight_source=1,
        )
        view = build_view_from_ledger(totals, SCALE)
        assert view.property_id == 5
        assert view.locked_source == 3
        assert view.minted_destination == 2 * SCALE
        assert check_lockbox_invariant(view).status == LockboxStatus.IN_FLIGHT

    def test_chain_reading_replaces_ledger_minted(self):
        totals = LedgerTotals(
            property_id=5,
            observed_source=3,
            confirmed_source=3,
            confirmed_destination=3 * SCALE,
        )
        view = build_view_from_ledger(totals, SCALE, minted_destination=6 * SCALE)
        assert view.minted_destination == 6 * SCALE
        report = check_lockbox_invariant(view)
        assert report.status == LockboxStatus.VIOLATED
        assert report.detail == "minted exceeds locked"

    def test_in_flight_withdrawals_carried(self):
        totals = LedgerTotals(
            property_id=5,
            observed_source=1,
            in_flight_source=-1,
            in_flight_withdrawal_source=-2,
        )
        view = build_view_from_ledger(totals, SCALE, minted_destination=2 * SCALE)
        assert view.in_flight_withdrawals == -2
        assert view.in_flight_deposits == 1
