from typing import Optional

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.core import RPCException
from solders.signature import Signature

# What a solana-py client call raises when the node or the transport fails.
RPC_ERRORS = (RPCException, SolanaRpcException, httpx.HTTPError)


class ClaimError(Exception):
    """Base class for every failure the claimer reports."""


class ConfigError(ClaimError):
    """Missing or invalid configuration (secret key, addresses, endpoints)."""


class ProofUnavailable(ClaimError):
    """The claim-proof service has no usable record for the claimant."""


class RpcUnavailable(ClaimError):
    """An RPC read the claimer depends on could not be answered."""


class InvalidProofEntry(ClaimError, ValueError):
    """A merkle proof hash is wider than 32 bytes."""


class DerivationError(ClaimError):
    pass


class TransactionOrderError(ClaimError, ValueError):
    """An instruction writes to an account before the account exists."""


class SubmissionRejected(ClaimError):
    """The network declined a transaction attempt.

    ``signature`` is set when the outcome is unknown: the transaction was
    signed and handed to the transport, which then failed or timed out, so it
    may still land.
    """

    def __init__(
        self,
        message: str,
        kind: str = "transient",
        attempt: Optional[int] = None,
        signature: Optional[Signature] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.attempt = attempt
        self.signature = signature
