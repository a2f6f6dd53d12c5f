"""
Tests for RangeMonitor: out-of-range detection, rebalances and the
operator hand-off after a partial rebalance.
"""
import pytest

from conftest import GAS_RESERVE, FakeAmm, FakeClmm, make_pool
from mmcore.trading.errors import PreconditionError
from mmcore.trading.planner import PlannerSettings, StepPlanner
from mmcore.trading.range_monitor import RangeMonitor
from mmcore.trading.types import SOL_MINT, USDC_MINT, ClmmPosition, ConfirmationResult


@pytest.fixture
def clmm():
    return FakeClmm(tick=0)


@pytest.fixture
def supervisor(logger, make_supervisor, ledger, persistence, clmm):
    planner = StepPlanner(
        logger=logger,
        amm=FakeAmm(),
        ledger=ledger,
        persistence=persistence,
        clmm=clmm,
        settings=PlannerSettings(gas_reserve_lamports=GAS_RESERVE),
    )
    return make_supervisor(planner=planner)


@pytest.fixture
def monitor(logger, persistence, clmm, queue, supervisor, notifier):
    return RangeMonitor(
        logger=logger,
        persistence=persistence,
        clmm=clmm,
        queue=queue,
        supervisor=supervisor,
        notifier=notifier,
    )


@pytest.fixture
def position(persistence, wallet):
    return persistence.add_position(
        ClmmPosition(
            position_id="pos-1",
            wallet_id="wallet-1",
            pool=make_pool(),
            lower_tick=100,
            upper_tick=200,
        )
    )


class TestRangeCheck:
    """Only out-of-range positions produce rebalance jobs."""

    async def test_in_range_position_is_left_alone(self, monitor, clmm, position, notifier):
        clmm.tick = 150

        assert await monitor.check_positions() == []
        assert notifier.alerts == []

    async def test_out_of_range_position_queues_rebalance(self, monitor, position, queue, notifier):
        job = await monitor.check_position(position)

        assert job.kind == "rebalance"
        assert job.position_id == "pos-1"
        assert queue.pending("wallet-1") == [job]
        assert notifier.alerts[0][0] == "CLMM position out of range; rebalancing"

    async def test_pending_rebalance_is_not_duplicated(self, monitor, position, queue, clmm):
        await monitor.check_position(position)

        assert await monitor.check_position(position) is None
        assert len(queue.pending("wallet-1")) == 1
        assert clmm.tick_reads == ["pool-SOL/USDC"]

    async def test_failing_position_does_not_stop_others(self, monitor, supervisor, persistence, position, clmm, wallet):
        persistence.add_position(
            ClmmPosition(
                position_id="pos-2",
                wallet_id="wallet-1",
                pool=make_pool("BAD/USDC"),
                lower_tick=100,
                upper_tick=200,
            )
        )
        original = clmm.current_tick

        async def flaky_tick(*, pool):
            if pool.symbol == "BAD/USDC":
                raise ConnectionError("rpc down")
            return await original(pool=pool)

        clmm.current_tick = flaky_tick

        jobs = await monitor.check_positions()
        await supervisor.wait_idle()

        assert [job.position_id for job in jobs] == ["pos-1"]

    async def test_busy_wallet_rebalance_runs_on_next_check(self, monitor, supervisor, queue, position, clmm):
        """A rebalance queued behind a held wallet is picked up by the following check."""
        lease = await queue.try_lock("wallet-1")
        jobs = await monitor.check_positions()
        await supervisor.wait_idle()
        assert jobs[0].state == "pending"
        await lease.release()

        assert await monitor.check_positions() == []
        await supervisor.wait_idle()

        assert jobs[0].state == "succeeded"
        assert queue.pending("wallet-1") == []


class TestRebalance:
    """Rebalance withdraws, swaps toward 50/50 and reopens around the tick."""

    async def test_successful_rebalance_recentres_position(self, monitor, supervisor, persistence, position, clmm):
        jobs = await monitor.check_positions()
        await supervisor.wait_idle()

        assert jobs[0].state == "succeeded"
        stored = persistence.positions["pos-1"]
        assert (stored.lower_tick, stored.upper_tick) == (-50, 50)
        assert stored.status == "open"
        assert clmm.opened == [(-50, 50)]

    async def test_partial_rebalance_waits_for_operator(
        self, monitor, supervisor, persistence, position, ledger, notifier, clmm
    ):
        """
        Withdraw confirms, then the reopen never lands.

        The position must be flagged for the operator and skipped afterwards.
        """
        ledger.balances = {SOL_MINT: GAS_RESERVE + 1_000_000, USDC_MINT: 1_000_000}
        ledger.confirm_script = [ConfirmationResult(status="confirmed"), ConfirmationResult(status="timeout")]
        ledger.default_status = ConfirmationResult(status="pending")

        jobs = await monitor.check_positions()
        await supervisor.wait_idle()

        job = jobs[0]
        assert job.state == "partial_rebalance"
        assert job.completed_steps == ["withdraw", "swap"]
        stored = persistence.positions["pos-1"]
        assert stored.status == "withdrawn"
        assert stored.requires_operator is True
        critical = [alert for alert in notifier.alerts if alert[1] == "critical"]
        assert critical[0][0] == "Rebalance left the position withdrawn; operator action required"
        assert critical[0][2]["failed_step"] == "reopen"
        assert persistence.audits[-1].state == "partial_rebalance"

        reads = len(clmm.tick_reads)
        assert await monitor.check_positions() == []
        assert len(clmm.tick_reads) == reads

    async def test_unconfirmed_withdraw_waits_for_operator(
        self, monitor, supervisor, persistence, position, ledger, notifier, clmm
    ):
        """
        The withdraw is sent but never resolves within the retry budget.

        Its liquidity may already be gone, so the position is held for the operator.
        """
        ledger.confirm_script = [ConfirmationResult(status="timeout")]
        ledger.default_status = ConfirmationResult(status="pending")

        jobs = await monitor.check_positions()
        await supervisor.wait_idle()

        job = jobs[0]
        assert job.state == "partial_rebalance"
        assert job.completed_steps == []
        assert len(ledger.submitted) == 1
        stored = persistence.positions["pos-1"]
        assert stored.status == "rebalancing"
        assert stored.requires_operator is True
        critical = [alert for alert in notifier.alerts if alert[1] == "critical"]
        assert critical[0][0] == "Rebalance withdraw outcome unknown; operator action required"
        assert critical[0][2]["failed_step"] == "withdraw"
        assert critical[0][2]["pending_reference"] == ledger.submitted[0]
        assert persistence.audits[-1].state == "partial_rebalance"

        reads = len(clmm.tick_reads)
        assert await monitor.check_positions() == []
        assert len(clmm.tick_reads) == reads

    async def test_withdraw_rejected_before_landing_fails_cleanly(
        self, monitor, supervisor, persistence, position, ledger
    ):
        ledger.submit_errors = [RuntimeError("custom program error: 0x9999")]

        jobs = await monitor.check_positions()
        await supervisor.wait_idle()

        assert jobs[0].state == "failed_permanently"
        stored = persistence.positions["pos-1"]
        assert stored.status == "open"
        assert stored.requires_operator is False


class TestResolvePosition:
    """Operators clear the flag by reopening or closing the position."""

    @pytest.fixture
    def flagged(self, persistence, position):
        position.status = "withdrawn"
        position.requires_operator = True
        return position

    async def test_reopen_with_new_ticks(self, monitor, persistence, flagged):
        resolved = await monitor.resolve_position("pos-1", status="open", lower_tick=-40, upper_tick=60)

        assert resolved.requires_operator is False
        stored = persistence.positions["pos-1"]
        assert (stored.status, stored.lower_tick, stored.upper_tick) == ("open", -40, 60)

    async def test_close_keeps_ticks(self, monitor, persistence, flagged):
        await monitor.resolve_position("pos-1", status="closed")

        stored = persistence.positions["pos-1"]
        assert stored.status == "closed"
        assert (stored.lower_tick, stored.upper_tick) == (100, 200)
        assert await monitor.check_positions() == []

    async def test_inverted_range_is_rejected(self, monitor, flagged):
        with pytest.raises(ValueError):
            await monitor.resolve_position("pos-1", status="open", lower_tick=10, upper_tick=10)

    async def test_only_open_or_closed(self, monitor, flagged):
        with pytest.raises(ValueError):
            await monitor.resolve_position("pos-1", status="rebalancing")

    async def test_unknown_position(self, monitor):
        with pytest.raises(PreconditionError):
            await monitor.resolve_position("missing", status="closed")
