"""
Signs and submits the claim transaction until the network accepts it.

- Every attempt fetches a fresh blockhash and signs a fresh transaction.
- Transient rejections (stale blockhash, RPC hiccups, account races) are
  retried with exponential backoff up to ``RetryPolicy.max_attempts``.
- Permanent rejections (claim already recorded, empty fee payer) stop the
  loop at once; retrying them can only produce the same error.
- A transaction whose send or confirmation failed in transit may still land.
  Its signature is looked up before the next attempt and before giving up,
  so a claim that landed is never reported as failed.
"""

import enum
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Union

from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from claimer.errors import RPC_ERRORS, SubmissionRejected
from claimer.tx_builder import ClaimTransaction

logger = logging.getLogger("claimer.submitter")

PERMANENT_MARKERS = (
    "already in use",
    "attempt to debit an account but found no record of a prior credit",
    "insufficient funds",
    "insufficient lamports",
)
LANDED_LEVELS = ("confirmed", "finalized")
POLL_INTERVAL = 0.8
MAX_BACKOFF_EXPONENT = 64
MAX_STATUS_LOOKUP = 256  # getSignatureStatuses limit


class RejectionKind(str, enum.Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class AttemptState(str, enum.Enum):
    BUILDING = "building"
    SIGNING = "signing"
    SUBMITTING = "submitting"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


def classify_rejection(message: str) -> RejectionKind:
    lowered = (message or "").lower()
    if any(marker in lowered for marker in PERMANENT_MARKERS):
        return RejectionKind.PERMANENT
    return RejectionKind.TRANSIENT


def error_message(exc: BaseException) -> str:
    if isinstance(exc, RPCException) and exc.args:
        detail = exc.args[0]
        message = getattr(detail, "message", None)
        if message:
            return str(message)
        return str(detail)
    return str(exc) or exc.__class__.__name__


def commitment_level(status) -> str:
    # solders renders TransactionConfirmationStatus.Confirmed; plain strings pass through
    level = getattr(status, "confirmation_status", None)
    if level is None:
        return ""
    return str(level).rsplit(".", 1)[-1].lower()


def is_landed(status) -> bool:
    """True for a successful transaction at confirmed or finalized commitment."""
    return status is not None and status.err is None and commitment_level(status) in LANDED_LEVELS


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 30  # 0 retries forever
    initial_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 8.0

    def __post_init__(self) -> None:
        if self.max_attempts < 0:
            raise ValueError(f"max_attempts must be >= 0, got {self.max_attempts}")

    def delay_for(self, attempt: int) -> float:
        """Backoff before attempt ``attempt + 1``."""
        if self.initial_delay <= 0:
            return 0.0
        exponent = min(max(attempt - 1, 0), MAX_BACKOFF_EXPONENT)
        try:
            delay = self.initial_delay * self.multiplier ** exponent
        except OverflowError:
            return self.max_delay
        return min(self.max_delay, delay)

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts > 0 and attempt >= self.max_attempts


@dataclass(frozen=True)
class SubmissionResult:
    accepted: bool
    attempts: int
    signature: Optional[Signature] = None
    error: Optional[SubmissionRejected] = None


def extract_sig(resp) -> Union[Signature, str]:
    if isinstance(resp, dict):
        return str(resp.get("result") or resp.get("value") or "")
    return getattr(resp, "value", resp)


class ClaimSubmitter:
    def __init__(
        self,
        client,
        payer: Keypair,
        policy: Optional[RetryPolicy] = None,
        opts: Optional[TxOpts] = None,
        confirm_timeout: float = 0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.payer = payer
        self.policy = policy or RetryPolicy()
        self.opts = opts or TxOpts(skip_preflight=False, preflight_commitment=Confirmed)
        self.confirm_timeout = confirm_timeout
        self.sleep = sleep
        self.clock = clock

    def _state(self, attempt: int, state: AttemptState) -> None:
        logger.debug("claim_attempt_state attempt=%s state=%s", attempt, state.value)

    def _rejected(self, exc: BaseException, attempt: int, signature: Optional[Signature] = None) -> SubmissionRejected:
        message = error_message(exc)
        return SubmissionRejected(message, classify_rejection(message).value, attempt, signature)

    def sign(self, transaction: ClaimTransaction) -> VersionedTransaction:
        blockhash = self.client.get_latest_blockhash().value.blockhash
        message = transaction.compile(blockhash)
        return VersionedTransaction(message, [self.payer])

    def send(self, transaction: ClaimTransaction, attempt: int = 1) -> Signature:
        """One Signing -> Submitting pass. Raises ``SubmissionRejected`` when the network declines."""
        self._state(attempt, AttemptState.SIGNING)
        try:
            tx = self.sign(transaction)
        except RPC_ERRORS as exc:
            raise self._rejected(exc, attempt) from exc
        self._state(attempt, AttemptState.SUBMITTING)
        try:
            resp = self.client.send_raw_transaction(bytes(tx), opts=self.opts)
        except RPCException as exc:
            raise self._rejected(exc, attempt) from exc
        except RPC_ERRORS as exc:
            # the node may have forwarded it before the connection dropped
            raise self._rejected(exc, attempt, tx.signatures[0]) from exc
        signature = extract_sig(resp)
        if self.confirm_timeout > 0:
            self.wait_for_confirmation(signature, attempt)
        return signature

    def wait_for_confirmation(self, signature: Signature, attempt: int = 1) -> None:
        if isinstance(signature, str):
            signature = Signature.from_string(signature)
        deadline = self.clock() + self.confirm_timeout
        while self.clock() < deadline:
            try:
                resp = self.client.get_signature_statuses([signature])
            except RPC_ERRORS as exc:
                logger.warning("claim_status_poll_failed signature=%s error=%s", signature, exc)
                resp = None
            status = resp.value[0] if resp is not None and resp.value else None
            if status is not None and status.err is not None:
                message = f"transaction {signature} failed on-chain: {status.err}"
                raise SubmissionRejected(message, classify_rejection(str(status.err)).value, attempt)
            if is_landed(status):
                return
            self.sleep(POLL_INTERVAL)
        raise SubmissionRejected(
            f"transaction {signature} not confirmed within {self.confirm_timeout}s",
            RejectionKind.TRANSIENT.value,
            attempt,
            signature,
        )

    def find_landed(self, signatures: Sequence[Signature]) -> Optional[Signature]:
        """First of ``signatures`` that landed, looked up in the node's history."""
        try:
            resp = self.client.get_signature_statuses(list(signatures), search_transaction_history=True)
        except RPC_ERRORS as exc:
            logger.warning("claim_status_lookup_failed signatures=%s error=%s", len(signatures), exc)
            return None
        for signature, status in zip(signatures, resp.value or []):
            if is_landed(status):
                return signature
        return None

    def submit_once(self, transaction: ClaimTransaction, attempt: int = 1) -> SubmissionResult:
        try:
            signature = self.send(transaction, attempt)
        except SubmissionRejected as exc:
            self._state(attempt, AttemptState.REJECTED)
            return SubmissionResult(accepted=False, attempts=attempt, error=exc)
        self._state(attempt, AttemptState.ACCEPTED)
        return SubmissionResult(accepted=True, attempts=attempt, signature=signature)

    def _accepted(self, signature: Signature, attempts: int) -> SubmissionResult:
        logger.info("claim_attempt_accepted attempt=%s signature=%s", attempts, signature)
        return SubmissionResult(accepted=True, attempts=attempts, signature=signature)

    def run(self, build: Callable[[], ClaimTransaction]) -> SubmissionResult:
        """Submit until accepted, a permanent rejection, or the attempt ceiling."""
        unresolved: List[Signature] = []
        attempt = 0
        while True:
            if unresolved:
                landed = self.find_landed(unresolved)
                if landed is not None:
                    return self._accepted(landed, attempt)
            attempt += 1
            self._state(attempt, AttemptState.BUILDING)
            result = self.submit_once(build(), attempt)
            if result.accepted:
                return self._accepted(result.signature, attempt)
            error = result.error
            logger.warning("claim_attempt_rejected attempt=%s kind=%s error=%s", attempt, error.kind, error)
            if error.signature is not None:
                unresolved.append(error.signature)
                del unresolved[:-MAX_STATUS_LOOKUP]
            if error.kind == RejectionKind.PERMANENT.value or self.policy.exhausted(attempt):
                landed = self.find_landed(unresolved) if unresolved else None
                if landed is not None:
                    return self._accepted(landed, attempt)
                return result
            delay = self.policy.delay_for(attempt)
            if delay > 0:
                self.sleep(delay)
