"""Shared fixtures for claimer tests."""

from __future__ import annotations

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from claimer.claim_proof import ClaimProof
from claimer.main import ClaimTargets, load_settings
from claimer.tx_builder import distributor_pda

PROGRAM_ID = Pubkey.from_string("meRjbQXFNf5En86FXT2YPz1dQzLj4Yb3xK8u1MVgqpb")
TOKEN_MINT = Pubkey.from_string("JUPyiwrYJFskUPiHa7hkeR8VUtAeFoSYbKedZNsDvCN")
TRANSFER_TO = Pubkey.from_string("AyuS8y6dLsXXoQMkz5HLwgSaYxz8xaWgYH5asjq4VzU8")

CLAIM_AMOUNT = 1_234_500_000


def make_proof(amount: int = CLAIM_AMOUNT, proof=None) -> ClaimProof:
    distributor, _bump = distributor_pda(PROGRAM_ID, TOKEN_MINT)
    if proof is None:
        proof = (bytes(range(32)), bytes([0xAB]) * 32, b"\x01\x02")
    return ClaimProof(merkle_tree=distributor, amount=amount, proof=tuple(proof))


def make_test_settings(**overrides):
    """Settings that never read a developer's .env and never sleep."""
    defaults = dict(
        private_key="",
        program_id=str(PROGRAM_ID),
        token_mint=str(TOKEN_MINT),
        transfer_to=str(TRANSFER_TO),
        max_attempts=5,
        retry_initial_delay=0,
        check_existing_accounts=False,
        refresh_proof_each_attempt=False,
        confirm_timeout_seconds=0,
    )
    defaults.update(overrides)
    return load_settings(None, **defaults)


@pytest.fixture
def wallet() -> Keypair:
    return Keypair()


@pytest.fixture
def targets() -> ClaimTargets:
    return ClaimTargets(program_id=PROGRAM_ID, mint=TOKEN_MINT, transfer_to=TRANSFER_TO)


@pytest.fixture
def proof() -> ClaimProof:
    return make_proof()
