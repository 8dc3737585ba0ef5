import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import requests
from pydantic import BaseModel, ValidationError, conint
from solders.pubkey import Pubkey

from claimer.errors import ProofUnavailable

DEFAULT_PROOF_URL = "https://worker.jup.ag/jup-claim-proof"
U64_MAX = 2**64 - 1

logger = logging.getLogger("claimer.proof")


class ClaimProofPayload(BaseModel):
    merkle_tree: str
    amount: int
    proof: List[List[conint(ge=0, le=255)]]


@dataclass(frozen=True)
class ClaimProof:
    merkle_tree: Pubkey
    amount: int
    proof: Tuple[bytes, ...]


def parse_claim_proof(data) -> ClaimProof:
    if not data:
        raise ProofUnavailable("no eligible claim record")
    try:
        payload = ClaimProofPayload.model_validate(data)
    except ValidationError as exc:
        raise ProofUnavailable(f"malformed claim proof: {exc}") from exc
    try:
        merkle_tree = Pubkey.from_string(payload.merkle_tree)
    except Exception as exc:  # noqa: BLE001
        raise ProofUnavailable(f"invalid merkle_tree {payload.merkle_tree!r}: {exc}") from exc
    if payload.amount <= 0:
        raise ProofUnavailable("claim amount is zero; nothing to claim")
    if payload.amount > U64_MAX:
        raise ProofUnavailable(f"claim amount {payload.amount} is outside the u64 range")
    return ClaimProof(
        merkle_tree=merkle_tree,
        amount=payload.amount,
        proof=tuple(bytes(entry) for entry in payload.proof),
    )


class ClaimProofClient:
    """Fetches merkle claim proofs from the distributor's proof service."""

    def __init__(
        self,
        mint: Pubkey,
        base_url: str = DEFAULT_PROOF_URL,
        session: Optional[requests.Session] = None,
        timeout: float = 15,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.mint = mint
        self.session = session or requests.Session()
        self.timeout = timeout

    def proof_url(self, claimant: Pubkey) -> str:
        return f"{self.base_url}/{self.mint}/{claimant}"

    def fetch_proof(self, claimant: Pubkey) -> ClaimProof:
        url = self.proof_url(claimant)
        try:
            resp = self.session.get(url, headers={"Accept": "application/json"}, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("claim_proof_request_failed url=%s error=%s", url, exc)
            raise ProofUnavailable(f"claim proof request failed for {claimant}: {exc}") from exc
        proof = parse_claim_proof(data)
        logger.info(
            "claim_proof_fetched claimant=%s merkle_tree=%s amount=%s proof_len=%s",
            claimant,
            proof.merkle_tree,
            proof.amount,
            len(proof.proof),
        )
        return proof
