"""Claim-proof service client."""

from __future__ import annotations

import pytest
import requests

from claimer.claim_proof import ClaimProofClient, parse_claim_proof
from claimer.errors import ProofUnavailable
from claimer.tx_builder import distributor_pda
from tests.conftest import PROGRAM_ID, TOKEN_MINT
from tests.mocks import MockResponse, MockSession

MERKLE_TREE = str(distributor_pda(PROGRAM_ID, TOKEN_MINT)[0])


def make_payload(**overrides) -> dict:
    payload = {
        "merkle_tree": MERKLE_TREE,
        "amount": 2_500_000,
        "locked_amount": 0,
        "proof": [list(range(32)), [7] * 32],
    }
    payload.update(overrides)
    return payload


def test_fetch_proof_parses_record(wallet):
    session = MockSession(MockResponse(200, make_payload()))
    client = ClaimProofClient(TOKEN_MINT, "https://proofs.example/claim/", session=session, timeout=3)

    proof = client.fetch_proof(wallet.pubkey())

    assert str(proof.merkle_tree) == MERKLE_TREE
    assert proof.amount == 2_500_000
    assert proof.proof == (bytes(range(32)), bytes([7]) * 32)
    assert session.requests == [
        {
            "url": f"https://proofs.example/claim/{TOKEN_MINT}/{wallet.pubkey()}",
            "headers": {"Accept": "application/json"},
            "timeout": 3,
        }
    ]


def test_short_entries_are_kept_for_padding_later():
    proof = parse_claim_proof(make_payload(proof=[[1, 2, 3]]))
    assert proof.proof == (b"\x01\x02\x03",)


def test_empty_proof_path_is_valid():
    proof = parse_claim_proof(make_payload(proof=[]))
    assert proof.proof == ()


def test_http_error_raises_proof_unavailable(wallet):
    session = MockSession(MockResponse(404, {"error": "not found"}))
    client = ClaimProofClient(TOKEN_MINT, session=session)
    with pytest.raises(ProofUnavailable):
        client.fetch_proof(wallet.pubkey())


def test_connection_error_raises_proof_unavailable(wallet):
    session = MockSession(error=requests.ConnectionError("connection refused"))
    client = ClaimProofClient(TOKEN_MINT, session=session)
    with pytest.raises(ProofUnavailable):
        client.fetch_proof(wallet.pubkey())


def test_non_json_body_raises_proof_unavailable(wallet):
    session = MockSession(MockResponse(200, text="<html>rate limited</html>"))
    client = ClaimProofClient(TOKEN_MINT, session=session)
    with pytest.raises(ProofUnavailable):
        client.fetch_proof(wallet.pubkey())


@pytest.mark.parametrize(
    "payload",
    [
        None,
        {},
        {"merkle_tree": MERKLE_TREE, "amount": 5},
        make_payload(amount=0),
        make_payload(amount=2**64),
        make_payload(merkle_tree="not-a-pubkey"),
        make_payload(proof=[[256] * 32]),
        make_payload(proof="deadbeef"),
    ],
)
def test_malformed_or_ineligible_records(payload):
    with pytest.raises(ProofUnavailable):
        parse_claim_proof(payload)
