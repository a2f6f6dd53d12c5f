from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable

from solders.keypair import Keypair

from mmcore.common import guarded_call, log_event

from .errors import (
    ConfirmationTimeoutError,
    CredentialDecryptionError,
    ExecutionError,
    PartialRebalanceError,
    PreconditionError,
    RetriesExhaustedError,
    TransientExecutionError,
    WalletLockedError,
    classify_error,
    rejection_from_message,
)
from .planner import BuiltStep, JobStep, StepPlanner
from .swap_queue import SwapQueue
from .transactions import sign_instructions, transaction_reference
from .types import (
    JOB_FAILED_PERMANENTLY,
    JOB_IN_FLIGHT,
    JOB_PARTIAL_REBALANCE,
    JOB_SUCCEEDED,
    AuditRecord,
    ClmmPosition,
    LedgerClient,
    LedgerContext,
    Notifier,
    Persistence,
    SwapJob,
    WalletRecord,
)

DEFAULT_RETRY_DELAYS: tuple[float, ...] = (2.0, 4.0, 8.0)

CredentialSource = Callable[[str], Awaitable[Keypair]]


@dataclass(slots=True)
class _PendingSubmission:
    reference: str
    context: LedgerContext
    built: BuiltStep


@dataclass(slots=True)
class StepOutcome:
    amount_in: int = 0
    amount_out: int = 0
    reference: str | None = None
    skipped: bool = False


class ExecutionSupervisor:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        queue: SwapQueue,
        planner: StepPlanner,
        ledger: LedgerClient,
        persistence: Persistence,
        notifier: Notifier,
        credentials: CredentialSource,
        retry_delays: Iterable[float] = DEFAULT_RETRY_DELAYS,
        confirm_timeout_seconds: float = 30.0,
        max_concurrent_wallets: int = 8,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._logger = logger
        self._queue = queue
        self._planner = planner
        self._ledger = ledger
        self._persistence = persistence
        self._notifier = notifier
        self._credentials = credentials
        self._retry_delays = tuple(max(0.0, float(delay)) for delay in retry_delays)
        self._confirm_timeout_seconds = max(0.1, confirm_timeout_seconds)
        self._semaphore = asyncio.Semaphore(max(1, max_concurrent_wallets))
        self._sleep = sleep
        self._clock = clock
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._stopping = False

    @property
    def max_attempts(self) -> int:
        return 1 + len(self._retry_delays)

    @property
    def shutdown_grace_seconds(self) -> float:
        """Longest a single step can take to settle with every retry spent."""
        return self._confirm_timeout_seconds * self.max_attempts + sum(self._retry_delays)

    def dispatch(self, wallet_ids: Iterable[str]) -> list[asyncio.Task[None]]:
        started: list[asyncio.Task[None]] = []
        if self._stopping:
            return started
        for wallet_id in dict.fromkeys(wallet_ids):
            task = self._tasks.get(wallet_id)
            if task is not None and not task.done():
                continue
            task = asyncio.create_task(self._drain(wallet_id), name=f"wallet-{wallet_id}")
            self._tasks[wallet_id] = task
            task.add_done_callback(lambda done, key=wallet_id: self._forget_task(key, done))
            started.append(task)
        return started

    def _forget_task(self, wallet_id: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(wallet_id) is task:
            del self._tasks[wallet_id]
        if not task.cancelled() and task.exception() is not None:
            log_event(
                self._logger,
                level="error",
                event="wallet_worker_crashed",
                message="Wallet worker stopped with an unexpected error",
                wallet_id=wallet_id,
                error=str(task.exception()),
            )

    async def _drain(self, wallet_id: str) -> None:
        async with self._semaphore:
            while True:
                processed = await self.process_wallet(wallet_id)
                if not processed or not self._queue.pending(wallet_id):
                    return

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self, grace_seconds: float | None = None) -> None:
        """Stops taking new jobs and lets in-flight ones settle before cancelling.

        Jobs still queued stay pending. A job cut off after the grace period is
        audited as in flight together with its last submitted signature.
        """
        self._stopping = True
        tasks = [task for task in self._tasks.values() if not task.done()]
        if not tasks:
            return

        grace = self.shutdown_grace_seconds if grace_seconds is None else max(0.0, grace_seconds)
        log_event(
            self._logger,
            level="info",
            event="supervisor_draining",
            message="Waiting for in-flight jobs before shutdown",
            wallets=len(tasks),
            grace_seconds=grace,
        )
        _, unfinished = await asyncio.wait(tasks, timeout=grace)
        if not unfinished:
            return

        log_event(
            self._logger,
            level="warning",
            event="supervisor_grace_expired",
            message="In-flight jobs did not settle before shutdown; cancelling",
            wallets=len(unfinished),
            grace_seconds=grace,
        )
        for task in unfinished:
            task.cancel()
        await asyncio.gather(*unfinished, return_exceptions=True)

    async def process_wallet(self, wallet_id: str) -> list[SwapJob]:
        lease = await self._queue.try_lock(wallet_id)
        if lease is None:
            log_event(
                self._logger,
                level="debug",
                event="wallet_busy",
                message="Wallet is already being processed",
                wallet_id=wallet_id,
            )
            return []

        processed: list[SwapJob] = []
        async with lease:
            while not self._stopping:
                job = self._queue.pop_next(lease)
                if job is None:
                    break
                try:
                    await self.run_job(job)
                finally:
                    self._queue.finish(lease, job)
                processed.append(job)
        return processed

    async def run_exclusive(self, job: SwapJob) -> SwapJob:
        """Queues ``job`` and drains its wallet until the job resolves."""
        lease = await self._queue.try_lock(job.wallet_id)
        if lease is None:
            raise WalletLockedError(f"Wallet {job.wallet_id} is locked by another executor.")

        async with lease:
            if not self._queue.enqueue(job.wallet_id, job):
                raise PreconditionError(f"Wallet {job.wallet_id} backlog is full.")
            while not job.is_terminal:
                current = self._queue.pop_next(lease)
                if current is None:
                    break
                try:
                    await self.run_job(current)
                finally:
                    self._queue.finish(lease, current)
        return job

    async def run_job(self, job: SwapJob) -> SwapJob:
        if job.kind == "trade" and job.bot_id:
            try:
                bot = await self._persistence.load_bot(job.bot_id)
            except Exception as raw_error:
                await self._finish_failed(job, None, classify_error(raw_error), 0, 0)
                return job
            if bot is None or not bot.is_active:
                await self._drop_job(job, reason="bot_missing" if bot is None else "bot_stopped")
                return job

        job.transition(JOB_IN_FLIGHT)
        log_event(
            self._logger,
            level="info",
            event="swap_job_started",
            message="Swap job started",
            job_id=job.job_id,
            wallet_id=job.wallet_id,
            bot_id=job.bot_id,
            kind=job.kind,
            direction=job.direction,
        )

        wallet: WalletRecord | None = None
        committed = False
        amount_in = 0
        amount_out = 0
        plan_position = None
        current_step: JobStep | None = None
        try:
            wallet = await self._persistence.load_wallet(job.wallet_id)
            if wallet is None:
                raise PreconditionError(f"Wallet {job.wallet_id} was not found.")
            plan = await self._planner.plan(job, wallet)
            plan_position = plan.position
            for step in plan.steps:
                if step.name in job.completed_steps:
                    continue
                current_step = step
                outcome = await self._run_step(job, wallet, step)
                job.completed_steps.append(step.name)
                amount_in += outcome.amount_in
                amount_out += outcome.amount_out
                if step.commits and not outcome.skipped:
                    committed = True
                if step.on_confirmed is not None:
                    await guarded_call(
                        step.on_confirmed,
                        logger=self._logger,
                        event="step_callback_failed",
                        message="Post-confirmation bookkeeping failed",
                        level="error",
                        job_id=job.job_id,
                        step=step.name,
                    )
        except asyncio.CancelledError:
            await self._record_interrupted(job, wallet, amount_in, amount_out)
            raise
        except Exception as raw_error:
            error = classify_error(raw_error)
            # A committing step whose last submission never resolved may have landed.
            unresolved_commit = (
                not committed
                and current_step is not None
                and current_step.commits
                and isinstance(error, RetriesExhaustedError)
                and error.reference is not None
            )
            if committed:
                error = PartialRebalanceError(
                    f"Job {job.job_id} stopped after committing {job.completed_steps}: {error}",
                    completed_steps=job.completed_steps,
                    failed_step=self._failed_step_name(job, error),
                )
                await self._finish_partial(job, wallet, error, plan_position, amount_in, amount_out)
            elif unresolved_commit:
                pending_reference = error.reference
                error = PartialRebalanceError(
                    f"Job {job.job_id} could not confirm {current_step.name} "
                    f"({pending_reference}); outcome unknown: {error}",
                    completed_steps=job.completed_steps,
                    failed_step=current_step.name,
                )
                await self._finish_partial(
                    job,
                    wallet,
                    error,
                    plan_position,
                    amount_in,
                    amount_out,
                    pending_reference=pending_reference,
                )
            else:
                await self._finish_failed(job, wallet, error, amount_in, amount_out)
            return job

        job.transition(JOB_SUCCEEDED)
        await self._append_audit(job, wallet, amount_in=amount_in, amount_out=amount_out)
        log_event(
            self._logger,
            level="info",
            event="swap_job_succeeded",
            message="Swap job succeeded",
            job_id=job.job_id,
            wallet_id=job.wallet_id,
            bot_id=job.bot_id,
            kind=job.kind,
            attempts=job.attempts,
            signatures=job.signatures,
            amount_in=amount_in,
            amount_out=amount_out,
        )
        return job

    @staticmethod
    def _failed_step_name(job: SwapJob, error: ExecutionError) -> str:
        return error.step or f"after:{job.completed_steps[-1]}"

    async def _run_step(self, job: SwapJob, wallet: WalletRecord, step: JobStep) -> StepOutcome:
        pending: _PendingSubmission | None = None
        last_error: ExecutionError | None = None
        attempt_started: float | None = None

        for attempt in range(1, self.max_attempts + 1):
            if attempt_started is not None:
                delay = self._retry_delays[attempt - 2]
                remaining = delay - (self._clock() - attempt_started)
                if remaining > 0:
                    await self._sleep(remaining)
            attempt_started = self._clock()
            job.attempts += 1

            try:
                if pending is not None:
                    outcome = await self._resolve_pending(job, step, pending)
                    if outcome is not None:
                        return outcome
                    pending = None
                return await self._attempt(job, wallet, step, attempt)
            except ConfirmationTimeoutError as error:
                last_error = error
                pending = error.pending or pending
            except Exception as raw_error:
                error = classify_error(raw_error)
                if not error.retryable:
                    error.step = step.name
                    if isinstance(error, CredentialDecryptionError):
                        await self._alert(
                            "Wallet credential could not be decrypted",
                            level="error",
                            job_id=job.job_id,
                            wallet_id=job.wallet_id,
                        )
                    if error is raw_error:
                        raise
                    raise error from raw_error
                last_error = error

            log_event(
                self._logger,
                level="warning",
                event="swap_step_retry",
                message="Swap step attempt failed; will retry",
                job_id=job.job_id,
                wallet_id=job.wallet_id,
                step=step.name,
                attempt=attempt,
                max_attempts=self.max_attempts,
                error=str(last_error),
                reason=last_error.reason if last_error else None,
            )

        assert last_error is not None
        exhausted = RetriesExhaustedError(
            f"Step {step.name} failed after {self.max_attempts} attempts: {last_error}",
            attempts=self.max_attempts,
            last_error=last_error,
            reference=pending.reference if pending else None,
        )
        exhausted.step = step.name
        raise exhausted

    async def _resolve_pending(
        self,
        job: SwapJob,
        step: JobStep,
        pending: _PendingSubmission,
    ) -> StepOutcome | None:
        """Checks an unconfirmed submission; returns an outcome when it landed."""
        result = await self._ledger.signature_status(pending.reference, context=pending.context)
        log_event(
            self._logger,
            level="info",
            event="prior_signature_status",
            message="Checked status of an unconfirmed submission",
            job_id=job.job_id,
            step=step.name,
            reference=pending.reference,
            status=result.status,
        )
        if result.status == "confirmed":
            return StepOutcome(
                amount_in=pending.built.amount_in,
                amount_out=pending.built.amount_out,
                reference=pending.reference,
            )
        if result.status in {"pending", "timeout"}:
            raise ConfirmationTimeoutError(
                f"Submission {pending.reference} is still pending.",
                reference=pending.reference,
                pending=pending,
            )
        return None

    async def _attempt(self, job: SwapJob, wallet: WalletRecord, step: JobStep, attempt: int) -> StepOutcome:
        context = await self._ledger.get_latest_context()
        keypair = await self._credentials(wallet.wallet_id)
        if str(keypair.pubkey()) != wallet.public_key:
            raise CredentialDecryptionError(
                f"Decrypted key does not match wallet {wallet.wallet_id} public key."
            )

        built = await step.build(keypair.pubkey())
        if built.is_noop:
            log_event(
                self._logger,
                level="info",
                event="swap_step_skipped",
                message="Nothing to execute for step",
                job_id=job.job_id,
                step=step.name,
            )
            return StepOutcome(skipped=True)

        transaction = sign_instructions(built.instructions, keypair=keypair, context=context)
        del keypair
        expected_reference = transaction_reference(transaction)
        reference = await self._ledger.submit(transaction)
        if reference != expected_reference:
            log_event(
                self._logger,
                level="warning",
                event="submission_reference_mismatch",
                message="Ledger returned a different signature than the signed transaction",
                job_id=job.job_id,
                expected=expected_reference,
                reference=reference,
            )
        job.signatures.append(reference)
        log_event(
            self._logger,
            level="info",
            event="swap_step_submitted",
            message="Transaction submitted",
            job_id=job.job_id,
            wallet_id=job.wallet_id,
            step=step.name,
            attempt=attempt,
            reference=reference,
            blockhash=context.blockhash,
        )

        result = await self._ledger.confirm(
            reference,
            context=context,
            timeout_seconds=self._confirm_timeout_seconds,
        )
        if result.status == "confirmed":
            return StepOutcome(amount_in=built.amount_in, amount_out=built.amount_out, reference=reference)
        if result.status in {"timeout", "pending"}:
            raise ConfirmationTimeoutError(
                f"Confirmation of {reference} timed out after {self._confirm_timeout_seconds}s.",
                reference=reference,
                pending=_PendingSubmission(reference=reference, context=context, built=built),
            )
        if result.status == "expired":
            raise TransientExecutionError(f"Blockhash expired before {reference} landed.")

        message = result.error or f"Transaction {reference} failed."
        rejection = rejection_from_message(message)
        if rejection is not None:
            raise rejection
        raise classify_error(RuntimeError(message))

    async def _finish_failed(
        self,
        job: SwapJob,
        wallet: WalletRecord | None,
        error: ExecutionError,
        amount_in: int,
        amount_out: int,
    ) -> None:
        job.transition(JOB_FAILED_PERMANENTLY, error=str(error))
        await self._append_audit(job, wallet, amount_in=amount_in, amount_out=amount_out)
        log_event(
            self._logger,
            level="error",
            event="swap_job_failed",
            message="Swap job failed permanently",
            job_id=job.job_id,
            wallet_id=job.wallet_id,
            bot_id=job.bot_id,
            kind=job.kind,
            attempts=job.attempts,
            reason=error.reason,
            error=str(error),
        )
        if isinstance(error, RetriesExhaustedError):
            await self._alert(
                "Swap job exhausted its retry budget",
                level="error",
                job_id=job.job_id,
                wallet_id=job.wallet_id,
                bot_id=job.bot_id,
                kind=job.kind,
                pending_reference=error.reference,
                error=str(error.last_error),
            )

    async def _finish_partial(
        self,
        job: SwapJob,
        wallet: WalletRecord | None,
        error: PartialRebalanceError,
        position: ClmmPosition | None,
        amount_in: int,
        amount_out: int,
        *,
        pending_reference: str | None = None,
    ) -> None:
        """Flags the position for an operator.

        With ``pending_reference`` set the committing step itself is unresolved,
        so the position may or may not still hold its liquidity.
        """
        job.transition(JOB_PARTIAL_REBALANCE, error=str(error))
        if position is not None:
            position.status = "rebalancing" if pending_reference else "withdrawn"
            position.requires_operator = True
            await guarded_call(
                lambda: self._persistence.update_position(position),
                logger=self._logger,
                event="position_update_failed",
                message="Failed to flag position for operator",
                level="error",
                position_id=position.position_id,
            )
        await self._append_audit(job, wallet, amount_in=amount_in, amount_out=amount_out)
        log_event(
            self._logger,
            level="error",
            event="rebalance_partial",
            message=(
                "Rebalance stopped with an unconfirmed withdrawal"
                if pending_reference
                else "Rebalance stopped after withdrawing liquidity"
            ),
            job_id=job.job_id,
            wallet_id=job.wallet_id,
            position_id=job.position_id,
            completed_steps=error.completed_steps,
            failed_step=error.failed_step,
            pending_reference=pending_reference,
            error=str(error),
        )
        await self._alert(
            (
                "Rebalance withdraw outcome unknown; operator action required"
                if pending_reference
                else "Rebalance left the position withdrawn; operator action required"
            ),
            level="critical",
            job_id=job.job_id,
            wallet_id=job.wallet_id,
            position_id=job.position_id,
            completed_steps=error.completed_steps,
            failed_step=error.failed_step,
            pending_reference=pending_reference,
        )

    async def _drop_job(self, job: SwapJob, *, reason: str) -> None:
        job.last_error = f"Bot {job.bot_id} is no longer active; job dropped ({reason})."
        log_event(
            self._logger,
            level="warning",
            event="swap_job_dropped",
            message="Trade job dropped before execution",
            job_id=job.job_id,
            wallet_id=job.wallet_id,
            bot_id=job.bot_id,
            direction=job.direction,
            reason=reason,
        )
        await self._append_audit(job, None, amount_in=0, amount_out=0)

    async def _record_interrupted(
        self,
        job: SwapJob,
        wallet: WalletRecord | None,
        amount_in: int,
        amount_out: int,
    ) -> None:
        pending_reference = job.signatures[-1] if job.signatures else None
        job.last_error = "Interrupted during shutdown; last submission unresolved."
        await self._append_audit(job, wallet, amount_in=amount_in, amount_out=amount_out)
        log_event(
            self._logger,
            level="critical",
            event="swap_job_interrupted",
            message="Swap job was cancelled while in flight",
            job_id=job.job_id,
            wallet_id=job.wallet_id,
            bot_id=job.bot_id,
            kind=job.kind,
            completed_steps=job.completed_steps,
            pending_reference=pending_reference,
        )
        await self._alert(
            "Swap job interrupted by shutdown; check its last submission",
            level="critical",
            job_id=job.job_id,
            wallet_id=job.wallet_id,
            kind=job.kind,
            pending_reference=pending_reference,
        )

    async def _append_audit(
        self,
        job: SwapJob,
        wallet: WalletRecord | None,
        *,
        amount_in: int,
        amount_out: int,
    ) -> None:
        record = AuditRecord(
            job_id=job.job_id,
            wallet_id=job.wallet_id,
            bot_id=job.bot_id,
            kind=job.kind,
            state=job.state,
            signatures=tuple(job.signatures),
            amount_in=amount_in,
            amount_out=amount_out,
            attempts=job.attempts,
            wallet_snapshot=wallet.snapshot() if wallet else {"wallet_id": job.wallet_id},
            error=job.last_error,
        )
        await guarded_call(
            lambda: self._persistence.append_audit(record),
            logger=self._logger,
            event="audit_append_failed",
            message="Failed to append audit record",
            level="error",
            job_id=job.job_id,
        )

    async def _alert(self, message: str, *, level: str = "warning", **details) -> None:
        await guarded_call(
            lambda: self._notifier.alert(message, level=level, **details),
            logger=self._logger,
            event="alert_failed",
            message="Failed to deliver operator alert",
            alert=message,
            job_id=details.get("job_id"),
        )
