"""Disbursement - turns obligation batches into confirmed token transfers"""

import asyncio
import logging
import time
from decimal import ROUND_CEILING, Decimal
from typing import Awaitable, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from capguard.config import settings
from capguard.domain.exceptions import ConfirmationTimeoutError, TransferError
from capguard.domain.models import DisbursementReport, ObligationBatch, SettlementStatus, TransferOutcome
from capguard.domain.retry import ErrorClass, classify_transfer_error
from capguard.infrastructure.clients.chain import ZERO_ADDRESS, ChainClient
from capguard.infrastructure.database.repositories import SettlementRepository
from capguard.infrastructure.observability.logging import log_disbursement_report
from capguard.infrastructure.observability.metrics import confirmation_latency_histogram, record_transfer_outcome
from capguard.services.obligations import ObligationAggregator

logger = logging.getLogger(__name__)


def _apply_multiplier(value: int, multiplier: Decimal) -> int:
    return int((Decimal(value) * multiplier).to_integral_value(rounding=ROUND_CEILING))


def _failed(reason: str, error: str) -> TransferOutcome:
    return TransferOutcome(status=SettlementStatus.FAILED, error=error, reason=reason)


class DisbursementEngine:
    """
    Executes one obligation batch as an ERC-20 transfer from the signer.

    Submission (gas price, gas estimate, nonce, broadcast) is serialized per
    signer; confirmation waits run concurrently.
    """

    def __init__(
        self,
        chain: ChainClient,
        token_addresses: Dict[str, str] | None = None,
        max_attempts: int | None = None,
        retry_delay: float | None = None,
        gas_price_multiplier: Decimal | None = None,
        gas_limit_buffer: Decimal | None = None,
        confirmation_timeout: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.chain = chain
        self.token_addresses = token_addresses if token_addresses is not None else dict(settings.token_addresses)
        self.max_attempts = max_attempts or settings.max_transfer_attempts
        self.retry_delay = settings.retry_delay_seconds if retry_delay is None else retry_delay
        self.gas_price_multiplier = gas_price_multiplier or settings.gas_price_multiplier
        self.gas_limit_buffer = gas_limit_buffer or settings.gas_limit_buffer
        self.confirmation_timeout = confirmation_timeout or settings.confirmation_timeout_seconds
        self._sleep = sleep
        self._submit_lock = asyncio.Lock()

    async def disburse(
        self,
        batch: ObligationBatch,
        on_broadcast: Optional[Callable[[str], None]] = None,
    ) -> TransferOutcome:
        """
        Transfer a batch total to its borrower and classify the result.

        Preconditions each fail with a distinct reason and nothing is submitted:
        signer_not_ready, zero_address, non_positive_amount, unknown_asset,
        insufficient_balance.

        Args:
            batch: Obligation batch to pay
            on_broadcast: Called with the tx hash as soon as it is broadcast
        """
        if not self.chain.is_ready:
            logger.error("Signer not initialized", extra={"borrower": batch.borrower_address})
            return _failed("signer_not_ready", "Signer not initialized")

        if not batch.borrower_address or batch.borrower_address.lower() == ZERO_ADDRESS:
            return _failed("zero_address", "Invalid recipient address")

        if batch.total_amount <= 0:
            return _failed("non_positive_amount", "Transfer amount must be greater than zero")

        token = self.token_addresses.get(batch.asset)
        if not token:
            return _failed("unknown_asset", f"No token address configured for {batch.asset}")

        # Best effort: an unreadable balance does not block the transfer
        try:
            balance = await self.chain.get_balance(token, self.chain.signer_address)
        except Exception as e:
            logger.warning("Could not verify signer balance before transfer", extra={"asset": batch.asset, "reason": str(e)})
            balance = None

        if balance is not None and balance < batch.total_amount:
            logger.error(
                "Insufficient token balance",
                extra={"asset": batch.asset, "balance": str(balance), "required": str(batch.total_amount)},
            )
            return _failed("insufficient_balance", f"Insufficient balance: have {balance}, need {batch.total_amount}")

        return await self._execute(token, batch, on_broadcast)

    async def _execute(
        self,
        token: str,
        batch: ObligationBatch,
        on_broadcast: Optional[Callable[[str], None]],
    ) -> TransferOutcome:
        last_error: Exception | None = None

        for attempt in range(1, self.max_attempts + 1):
            logger.info(
                "Attempting token transfer",
                extra={
                    "attempt": attempt,
                    "max_attempts": self.max_attempts,
                    "borrower": batch.borrower_address,
                    "asset": batch.asset,
                    "amount": str(batch.total_amount),
                },
            )
            try:
                tx_hash = await self._submit(token, batch)
            except Exception as e:
                last_error = e
                if classify_transfer_error(e) is ErrorClass.TERMINAL:
                    logger.error("Transfer failed, not retrying", extra={"attempt": attempt, "reason": str(e)})
                    return TransferOutcome(
                        status=SettlementStatus.FAILED,
                        tx_hash=getattr(e, "tx_hash", None),
                        attempts=attempt,
                        error=str(e),
                    )

                # A send that errored may still have reached the node
                sent_hash = getattr(e, "tx_hash", None)
                if sent_hash is not None:
                    known = await self._was_broadcast(sent_hash)
                    if known is None:
                        return TransferOutcome(
                            status=SettlementStatus.PENDING,
                            tx_hash=sent_hash,
                            attempts=attempt,
                            error=f"Send status unknown: {e}",
                        )
                    if known:
                        if on_broadcast is not None:
                            on_broadcast(sent_hash)
                        return await self._confirm(sent_hash, attempt)

                logger.warning("Transfer attempt failed", extra={"attempt": attempt, "reason": str(e)})
                if attempt < self.max_attempts:
                    await self._sleep(self.retry_delay * attempt)
                continue

            if on_broadcast is not None:
                on_broadcast(tx_hash)
            return await self._confirm(tx_hash, attempt)

        return TransferOutcome(
            status=SettlementStatus.FAILED,
            attempts=self.max_attempts,
            error=f"Max attempts exceeded: {last_error}",
        )

    async def _submit(self, token: str, batch: ObligationBatch) -> str:
        """Price, estimate, sign and broadcast under the signer lock"""
        async with self._submit_lock:
            gas_price = _apply_multiplier(await self.chain.gas_price(), self.gas_price_multiplier)
            gas_estimate = await self.chain.estimate_transfer_gas(token, batch.borrower_address, batch.total_amount)
            gas_limit = _apply_multiplier(gas_estimate, self.gas_limit_buffer)
            # Fresh on every attempt so a stale nonce is recovered on retry
            nonce = await self.chain.get_nonce()

            logger.debug("Transaction params", extra={"gas_price": gas_price, "gas_limit": gas_limit, "nonce": nonce})
            tx_hash = await self.chain.send_transfer(
                token, batch.borrower_address, batch.total_amount, gas_limit, gas_price, nonce
            )

        logger.info("Transaction submitted", extra={"tx_hash": tx_hash, "nonce": nonce})
        return tx_hash

    async def _was_broadcast(self, tx_hash: str) -> Optional[bool]:
        """None when the node cannot say; the transfer must then not be resent"""
        try:
            known = await self.chain.is_broadcast(tx_hash)
        except TransferError as e:
            logger.error("Cannot verify failed send, leaving pending", extra={"tx_hash": tx_hash, "reason": str(e)})
            return None

        if known:
            logger.warning("Send errored but transaction reached the node", extra={"tx_hash": tx_hash})
        return known

    async def _confirm(self, tx_hash: str, attempts: int) -> TransferOutcome:
        """Wait for the receipt; a broadcast transfer is never resubmitted"""
        started = time.monotonic()
        try:
            receipt = await asyncio.wait_for(
                self.chain.wait_for_receipt(tx_hash, self.confirmation_timeout),
                timeout=self.confirmation_timeout,
            )
        except (asyncio.TimeoutError, ConfirmationTimeoutError):
            logger.error("Transaction not confirmed in time, leaving pending", extra={"tx_hash": tx_hash})
            return TransferOutcome(
                status=SettlementStatus.PENDING,
                tx_hash=tx_hash,
                attempts=attempts,
                error=f"Not confirmed within {self.confirmation_timeout}s",
            )
        except TransferError as e:
            logger.error("Receipt lookup failed, leaving pending", extra={"tx_hash": tx_hash, "reason": str(e)})
            return TransferOutcome(status=SettlementStatus.PENDING, tx_hash=tx_hash, attempts=attempts, error=str(e))

        confirmation_latency_histogram.observe(time.monotonic() - started)

        if receipt.success:
            logger.info(
                "Transaction confirmed",
                extra={"tx_hash": tx_hash, "block_number": receipt.block_number, "gas_used": receipt.gas_used},
            )
            return TransferOutcome(
                status=SettlementStatus.PROCESSED,
                tx_hash=tx_hash,
                gas_used=receipt.gas_used,
                attempts=attempts,
            )

        logger.error("Transaction reverted", extra={"tx_hash": tx_hash})
        return TransferOutcome(
            status=SettlementStatus.FAILED,
            tx_hash=tx_hash,
            gas_used=receipt.gas_used,
            attempts=attempts,
            error="Transaction reverted",
        )


class SettlementRunner:
    """One settlement pass: aggregate, disburse in parallel, record outcomes"""

    def __init__(
        self,
        session_factory: sessionmaker,
        aggregator: ObligationAggregator,
        engine: DisbursementEngine,
        max_workers: int | None = None,
        enabled: bool | None = None,
    ):
        self.session_factory = session_factory
        self.aggregator = aggregator
        self.engine = engine
        self.max_workers = max_workers or settings.disbursement_max_workers
        self.enabled = settings.settlement_enabled if enabled is None else enabled

    async def run(self) -> DisbursementReport:
        """
        Settle all pending obligation batches.

        Per-batch failures are folded into the report. Only a ledger read
        failure before any transfer aborts the pass.
        """
        report = DisbursementReport(dry_run=not self.enabled)
        batches = self.aggregator.pending_batches()

        if not batches:
            logger.info("No pending settlements to process")
            log_disbursement_report(report)
            return report

        if not self.enabled:
            for batch in batches:
                logger.info(
                    "Settlement disabled, skipping batch",
                    extra={"borrower": batch.borrower_address, "asset": batch.asset, "amount": str(batch.total_amount)},
                )
            log_disbursement_report(report)
            return report

        semaphore = asyncio.Semaphore(self.max_workers)

        async def worker(batch: ObligationBatch) -> TransferOutcome:
            async with semaphore:
                return await self.settle_batch(batch)

        results = await asyncio.gather(*(worker(b) for b in batches), return_exceptions=True)

        borrowers = set()
        for batch, result in zip(batches, results):
            label = f"{batch.borrower_address} ({batch.asset})"
            if isinstance(result, BaseException):
                report.errors.append(f"Failed to settle {label}: {result}")
                continue

            if result.status is SettlementStatus.PROCESSED:
                borrowers.add(batch.borrower_address.lower())
                report.transactions_created += 1
                report.total_disbursed[batch.asset] = report.total_disbursed.get(batch.asset, 0) + batch.total_amount
            elif result.status is SettlementStatus.PENDING:
                report.pending_batches += 1
                logger.warning("Settlement left pending", extra={"borrower": batch.borrower_address, "tx_hash": result.tx_hash})
            else:
                report.failed_batches += 1
                report.errors.append(f"On-chain settlement failed for {label}: {result.error}")

        report.borrowers_processed = len(borrowers)
        log_disbursement_report(report)
        return report

    async def settle_batch(self, batch: ObligationBatch) -> TransferOutcome:
        """Disburse one batch and write its rows; persists pending if cancelled after broadcast"""
        broadcast: List[str] = []
        try:
            outcome = await self.engine.disburse(batch, on_broadcast=broadcast.append)
        except asyncio.CancelledError:
            if broadcast:
                self._record(
                    batch,
                    TransferOutcome(
                        status=SettlementStatus.PENDING,
                        tx_hash=broadcast[-1],
                        attempts=len(broadcast),
                        error="Cancelled while awaiting confirmation",
                    ),
                )
            raise

        self._record(batch, outcome)
        record_transfer_outcome(outcome.status.value, outcome.attempts)
        return outcome

    def _record(self, batch: ObligationBatch, outcome: TransferOutcome) -> None:
        """Write every contribution row for the batch in one transaction"""
        with self.session_factory() as db:
            try:
                SettlementRepository(db).record_batch(batch, outcome)
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                # Transfer outcome is known on-chain but missing locally
                logger.critical(
                    "Settlement outcome not recorded, manual reconciliation required",
                    extra={
                        "borrower": batch.borrower_address,
                        "asset": batch.asset,
                        "amount": str(batch.total_amount),
                        "tx_hash": outcome.tx_hash,
                        "status": outcome.status.value,
                    },
                )
                raise

        logger.info(
            "Settlement recorded",
            extra={
                "borrower": batch.borrower_address,
                "asset": batch.asset,
                "amount": str(batch.total_amount),
                "rows": len(batch.contributions),
                "tx_hash": outcome.tx_hash,
                "status": outcome.status.value,
            },
        )
