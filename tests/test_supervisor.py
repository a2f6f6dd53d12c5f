"""
Tests for ExecutionSupervisor.

Covers the bounded retry schedule, error classification, ambiguous
confirmations and the per-wallet serialization guarantees.
"""
import asyncio
import random

import pytest

from conftest import TransferPlanner, make_bot, make_wallet
from mmcore.trading.errors import (
    CredentialDecryptionError,
    PreconditionError,
    TransientExecutionError,
    WalletLockedError,
)
from mmcore.trading.types import ConfirmationResult, SwapJob


def trade_job(wallet_id: str = "wallet-1", **fields) -> SwapJob:
    fields.setdefault("bot_id", "bot-1")
    fields.setdefault("direction", "sell")
    fields.setdefault("amount_in", 1_000)
    return SwapJob.new(wallet_id=wallet_id, kind="trade", **fields)


@pytest.fixture(autouse=True)
def active_bot(persistence):
    return persistence.add_bot(make_bot())


class TestRetrySchedule:
    """Transient failures are retried on the configured schedule."""

    async def test_four_failures_end_failed_permanently(
        self, make_supervisor, wallet, ledger, clock, notifier, persistence
    ):
        """Should wait 2s, 4s and 8s between attempts and never try a fifth time."""
        ledger.submit_errors = [TransientExecutionError("rpc congested") for _ in range(5)]
        supervisor = make_supervisor()

        job = await supervisor.run_job(trade_job())

        assert job.state == "failed_permanently"
        assert job.attempts == 4
        assert clock.sleeps == [2.0, 4.0, 8.0]
        # The fifth scripted error is never consumed.
        assert len(ledger.submit_errors) == 1
        assert len(persistence.audits) == 1
        assert persistence.audits[0].state == "failed_permanently"
        assert [alert[0] for alert in notifier.alerts] == ["Swap job exhausted its retry budget"]

    async def test_succeeds_after_transient_failures(self, make_supervisor, wallet, ledger, clock, persistence):
        """Should stop retrying as soon as an attempt confirms."""
        ledger.submit_errors = [TransientExecutionError("timeout"), TransientExecutionError("429 too many requests")]
        supervisor = make_supervisor()

        job = await supervisor.run_job(trade_job())

        assert job.state == "succeeded"
        assert job.attempts == 3
        assert clock.sleeps == [2.0, 4.0]
        assert len(job.signatures) == 1
        assert persistence.audits[0].signatures == tuple(job.signatures)

    async def test_delay_is_measured_between_attempt_starts(self, make_supervisor, wallet, ledger, clock):
        """Time spent inside an attempt counts toward the next delay."""
        supervisor = make_supervisor()
        original_submit = ledger.submit
        calls = 0

        async def slow_failing_submit(transaction):
            nonlocal calls
            calls += 1
            clock.now += 1.5
            if calls == 1:
                raise TransientExecutionError("node is behind")
            return await original_submit(transaction)

        ledger.submit = slow_failing_submit

        job = await supervisor.run_job(trade_job())

        assert job.state == "succeeded"
        assert clock.sleeps == [pytest.approx(0.5)]

    async def test_custom_retry_budget(self, make_supervisor, wallet, ledger, clock):
        """Retry delays are configuration; attempts are one more than delays."""
        ledger.submit_errors = [TransientExecutionError("timeout") for _ in range(3)]
        supervisor = make_supervisor(retry_delays=(1.0,))

        job = await supervisor.run_job(trade_job())

        assert supervisor.max_attempts == 2
        assert job.attempts == 2
        assert clock.sleeps == [1.0]


class TestNonRetryableFailures:
    """Failures that retrying cannot fix end the job immediately."""

    async def test_slippage_rejection_is_not_retried(self, make_supervisor, wallet, ledger, clock, notifier):
        ledger.confirm_script = [ConfirmationResult(status="failed", error="Slippage tolerance exceeded")]
        supervisor = make_supervisor()

        job = await supervisor.run_job(trade_job())

        assert job.state == "failed_permanently"
        assert job.attempts == 1
        assert clock.sleeps == []
        assert "Slippage" in job.last_error
        assert notifier.alerts == []

    async def test_unknown_error_is_not_retried(self, make_supervisor, wallet, ledger, clock):
        ledger.submit_errors = [RuntimeError("custom program error: 0x9999")]
        supervisor = make_supervisor()

        job = await supervisor.run_job(trade_job())

        assert job.state == "failed_permanently"
        assert job.attempts == 1

    async def test_decryption_failure_alerts_operator(
        self, make_supervisor, wallet, ledger, credentials, notifier
    ):
        """Should fail without submitting and raise an operator alert."""
        credentials.error = CredentialDecryptionError("bad token")
        supervisor = make_supervisor()

        job = await supervisor.run_job(trade_job())

        assert job.state == "failed_permanently"
        assert ledger.submitted == []
        assert notifier.alerts[0][0] == "Wallet credential could not be decrypted"
        assert notifier.alerts[0][2]["wallet_id"] == "wallet-1"

    async def test_mismatched_key_is_treated_as_decryption_failure(
        self, make_supervisor, persistence, keypair, ledger, notifier
    ):
        from solders.keypair import Keypair

        persistence.add_wallet(make_wallet(Keypair()))
        supervisor = make_supervisor()

        job = await supervisor.run_job(trade_job())

        assert job.state == "failed_permanently"
        assert ledger.submitted == []
        assert notifier.alerts

    async def test_missing_wallet_fails_job(self, make_supervisor, persistence):
        supervisor = make_supervisor()

        job = await supervisor.run_job(trade_job(wallet_id="ghost"))

        assert job.state == "failed_permanently"
        assert "ghost" in job.last_error

    async def test_notifier_failure_never_fails_trading_path(self, make_supervisor, wallet, ledger, notifier):
        ledger.submit_errors = [TransientExecutionError("timeout") for _ in range(4)]

        async def broken_alert(*_args, **_kwargs):
            raise ConnectionError("webhook down")

        notifier.alert = broken_alert
        supervisor = make_supervisor()

        job = await supervisor.run_job(trade_job())

        assert job.state == "failed_permanently"


class TestPerAttemptFreshness:
    """Every attempt uses a new blockhash and a newly decrypted key."""

    async def test_fresh_context_and_credential_per_attempt(self, make_supervisor, wallet, ledger, credentials):
        ledger.submit_errors = [TransientExecutionError("timeout"), TransientExecutionError("timeout")]
        supervisor = make_supervisor()

        await supervisor.run_job(trade_job())

        assert ledger.context_calls == 3
        assert credentials.calls == 3


class TestAmbiguousConfirmation:
    """A timed-out submission is checked before anything is resent."""

    async def test_timeout_then_confirmed_does_not_resubmit(self, make_supervisor, wallet, ledger, clock):
        ledger.confirm_script = [ConfirmationResult(status="timeout")]
        ledger.status_script = [ConfirmationResult(status="confirmed")]
        supervisor = make_supervisor()

        job = await supervisor.run_job(trade_job())

        assert job.state == "succeeded"
        assert len(ledger.submitted) == 1
        assert ledger.status_checks == ledger.submitted
        assert job.attempts == 2
        assert clock.sleeps == [2.0]

    async def test_timeout_then_expired_resubmits(self, make_supervisor, wallet, ledger):
        ledger.confirm_script = [ConfirmationResult(status="timeout")]
        ledger.status_script = [ConfirmationResult(status="expired")]
        supervisor = make_supervisor()

        job = await supervisor.run_job(trade_job())

        assert job.state == "succeeded"
        assert len(ledger.submitted) == 2
        assert job.signatures == ledger.submitted

    async def test_still_pending_consumes_attempt(self, make_supervisor, wallet, ledger, notifier):
        """Should exhaust the budget without resubmitting and report the pending signature."""
        ledger.confirm_script = [ConfirmationResult(status="timeout")]
        ledger.default_status = ConfirmationResult(status="pending")
        supervisor = make_supervisor()

        job = await supervisor.run_job(trade_job())

        assert job.state == "failed_permanently"
        assert len(ledger.submitted) == 1
        assert len(ledger.status_checks) == 3
        assert notifier.alerts[0][2]["pending_reference"] == ledger.submitted[0]


class TestWalletSerialization:
    """Jobs for one wallet run one at a time, in order."""

    async def test_process_wallet_returns_empty_when_locked(self, make_supervisor, queue, wallet):
        supervisor = make_supervisor()
        queue.enqueue("wallet-1", trade_job())
        lease = await queue.try_lock("wallet-1")

        assert await supervisor.process_wallet("wallet-1") == []
        assert len(queue.pending("wallet-1")) == 1
        await lease.release()

    async def test_run_exclusive_rejects_locked_wallet(self, make_supervisor, queue, wallet):
        supervisor = make_supervisor()
        lease = await queue.try_lock("wallet-1")

        with pytest.raises(WalletLockedError):
            await supervisor.run_exclusive(trade_job())
        await lease.release()

    async def test_run_exclusive_rejects_full_backlog(self, make_supervisor, logger, wallet):
        from mmcore.trading.swap_queue import SwapQueue

        small_queue = SwapQueue(logger=logger, max_pending_per_wallet=1)
        small_queue.enqueue("wallet-1", trade_job())
        supervisor = make_supervisor(queue=small_queue)

        with pytest.raises(PreconditionError):
            await supervisor.run_exclusive(trade_job())
        assert not small_queue.is_locked("wallet-1")

    async def test_lock_released_after_failure(self, make_supervisor, queue, wallet, ledger):
        ledger.submit_errors = [RuntimeError("custom program error: 0x1")]
        queue.enqueue("wallet-1", trade_job())
        supervisor = make_supervisor()

        processed = await supervisor.process_wallet("wallet-1")

        assert [job.state for job in processed] == ["failed_permanently"]
        assert not queue.is_locked("wallet-1")
        assert queue.in_flight("wallet-1") is None

    async def test_randomized_dispatch_keeps_fifo_and_single_in_flight(
        self, make_supervisor, queue, persistence, keypair
    ):
        """
        Many concurrent dispatchers over several wallets.

        Each wallet must observe its jobs in enqueue order and never more
        than one job executing at once.
        """
        rng = random.Random(7)
        wallet_ids = ["wallet-a", "wallet-b", "wallet-c"]
        for wallet_id in wallet_ids:
            persistence.add_wallet(make_wallet(keypair, wallet_id=wallet_id))

        active: dict[str, int] = {wallet_id: 0 for wallet_id in wallet_ids}
        violations: list[str] = []
        executed: dict[str, list[str]] = {wallet_id: [] for wallet_id in wallet_ids}

        class InstrumentedPlanner(TransferPlanner):
            async def plan(self, job, wallet):
                active[job.wallet_id] += 1
                if active[job.wallet_id] > 1:
                    violations.append(job.wallet_id)
                executed[job.wallet_id].append(job.job_id)
                for _ in range(rng.randint(0, 3)):
                    await asyncio.sleep(0)
                active[job.wallet_id] -= 1
                return await super().plan(job, wallet)

        supervisor = make_supervisor(planner=InstrumentedPlanner())
        enqueued: dict[str, list[str]] = {wallet_id: [] for wallet_id in wallet_ids}
        direct: list[asyncio.Task] = []

        async def producer(count: int) -> None:
            for _ in range(count):
                wallet_id = rng.choice(wallet_ids)
                job = trade_job(wallet_id=wallet_id)
                assert queue.enqueue(wallet_id, job)
                enqueued[wallet_id].append(job.job_id)
                if rng.random() < 0.5:
                    supervisor.dispatch([wallet_id])
                else:
                    direct.append(asyncio.create_task(supervisor.process_wallet(wallet_id)))
                await asyncio.sleep(0)

        await asyncio.gather(*(producer(10) for _ in range(4)))
        await asyncio.gather(*direct)
        for _ in range(20):
            supervisor.dispatch(wallet_ids)
            await supervisor.wait_idle()
            await asyncio.sleep(0)
            if not any(queue.pending(wallet_id) for wallet_id in wallet_ids):
                break

        assert violations == []
        assert executed == enqueued
        for wallet_id in wallet_ids:
            assert queue.in_flight(wallet_id) is None
            assert not queue.is_locked(wallet_id)


class TestBotStatus:
    """Trades are only sent for bots that are still active when they start."""

    async def test_stopped_bot_trade_is_dropped(self, make_supervisor, wallet, ledger, persistence, active_bot):
        active_bot.status = "stopped"
        supervisor = make_supervisor()

        job = await supervisor.run_job(trade_job())

        assert job.state == "pending"
        assert job.started_at is None
        assert ledger.submitted == []
        assert [(audit.job_id, audit.state) for audit in persistence.audits] == [(job.job_id, "pending")]

    async def test_unknown_bot_trade_is_dropped(self, make_supervisor, wallet, ledger):
        supervisor = make_supervisor()

        job = await supervisor.run_job(trade_job(bot_id="bot-gone"))

        assert job.state == "pending"
        assert "bot_missing" in job.last_error
        assert ledger.submitted == []

    async def test_bot_lookup_failure_fails_job(self, make_supervisor, wallet, ledger, persistence):
        async def broken_load_bot(bot_id):
            raise ConnectionError("firestore unavailable")

        persistence.load_bot = broken_load_bot
        supervisor = make_supervisor()

        job = await supervisor.run_job(trade_job())

        assert job.state == "failed_permanently"
        assert ledger.submitted == []

    async def test_dropped_trade_does_not_block_next_job(self, make_supervisor, queue, wallet, ledger, persistence):
        supervisor = make_supervisor()
        dropped = trade_job(bot_id="bot-gone")
        kept = trade_job()
        queue.enqueue("wallet-1", dropped)
        queue.enqueue("wallet-1", kept)

        await supervisor.process_wallet("wallet-1")

        assert dropped.state == "pending"
        assert kept.state == "succeeded"
        assert len(ledger.submitted) == 1

    async def test_other_job_kinds_skip_bot_check(self, make_supervisor, wallet, ledger):
        supervisor = make_supervisor()

        job = await supervisor.run_job(SwapJob.new(wallet_id="wallet-1", kind="sweep", bot_id="bot-gone"))

        assert job.state == "succeeded"
        assert len(ledger.submitted) == 1


class TestShutdown:
    """Shutdown lets in-flight jobs settle and audits the ones it has to cut off."""

    async def test_grace_covers_full_retry_budget(self, make_supervisor):
        supervisor = make_supervisor(confirm_timeout_seconds=30.0)

        assert supervisor.shutdown_grace_seconds == 30.0 * 4 + 2.0 + 4.0 + 8.0

    async def test_in_flight_job_finishes_and_queued_job_waits(self, make_supervisor, queue, wallet, ledger):
        entered = asyncio.Event()
        release = asyncio.Event()
        original_confirm = ledger.confirm

        async def gated_confirm(reference, *, context, timeout_seconds):
            entered.set()
            await release.wait()
            return await original_confirm(reference, context=context, timeout_seconds=timeout_seconds)

        ledger.confirm = gated_confirm
        supervisor = make_supervisor()
        first, second = trade_job(), trade_job()
        queue.enqueue("wallet-1", first)
        queue.enqueue("wallet-1", second)
        supervisor.dispatch(["wallet-1"])
        await entered.wait()

        stopping = asyncio.create_task(supervisor.shutdown(grace_seconds=5.0))
        await asyncio.sleep(0)
        assert not stopping.done()
        release.set()
        await stopping

        assert first.state == "succeeded"
        assert second.state == "pending"
        assert queue.pending("wallet-1") == [second]
        assert len(ledger.submitted) == 1
        assert supervisor.dispatch(["wallet-1"]) == []

    async def test_stuck_job_is_cancelled_and_audited(
        self, make_supervisor, queue, wallet, ledger, persistence, notifier
    ):
        """Should record the unresolved signature so an operator can check it."""
        entered = asyncio.Event()

        async def stuck_confirm(reference, *, context, timeout_seconds):
            entered.set()
            await asyncio.Event().wait()

        ledger.confirm = stuck_confirm
        supervisor = make_supervisor()
        job = trade_job()
        queue.enqueue("wallet-1", job)
        supervisor.dispatch(["wallet-1"])
        await entered.wait()

        await supervisor.shutdown(grace_seconds=0.01)

        assert job.state == "in_flight"
        audit = persistence.audits[-1]
        assert (audit.job_id, audit.state) == (job.job_id, "in_flight")
        assert audit.signatures == tuple(ledger.submitted)
        message, level, details = notifier.alerts[-1]
        assert level == "critical"
        assert details["pending_reference"] == ledger.submitted[0]
        assert not queue.is_locked("wallet-1")
        assert queue.in_flight("wallet-1") is None

    async def test_idle_shutdown_returns_immediately(self, make_supervisor, queue, wallet):
        supervisor = make_supervisor()
        queue.enqueue("wallet-1", trade_job())

        await supervisor.shutdown()

        assert supervisor.dispatch(["wallet-1"]) == []
        assert await supervisor.process_wallet("wallet-1") == []
        assert len(queue.pending("wallet-1")) == 1
