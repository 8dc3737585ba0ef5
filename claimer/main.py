from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

import base58
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings
from solana.rpc.api import Client as SolanaClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from claimer.claim_proof import DEFAULT_PROOF_URL, ClaimProof, ClaimProofClient
from claimer.errors import RPC_ERRORS, ClaimError, ConfigError, ProofUnavailable, RpcUnavailable
from claimer.mint_info import format_amount, get_mint_decimals
from claimer.submitter import ClaimSubmitter, RetryPolicy, SubmissionResult
from claimer.tx_builder import (
    ClaimTransaction,
    assemble_transaction,
    associated_token_address,
    build_claim_instructions,
    distributor_pda,
    instruction_to_dict,
    message_b64,
)

logger = logging.getLogger("claimer")


class Settings(BaseSettings):
    private_key: str = ""  # base58 secret key, or a JSON byte array
    transfer_to: str = "AyuS8y6dLsXXoQMkz5HLwgSaYxz8xaWgYH5asjq4VzU8"
    program_id: str = "meRjbQXFNf5En86FXT2YPz1dQzLj4Yb3xK8u1MVgqpb"
    token_mint: str = "JUPyiwrYJFskUPiHa7hkeR8VUtAeFoSYbKedZNsDvCN"
    solana_rpc: str = "https://api.mainnet-beta.solana.com"
    helius_rpc_url: str = ""
    claim_proof_url: str = DEFAULT_PROOF_URL
    request_timeout: float = 15
    max_attempts: int = Field(30, ge=0)  # 0 keeps submitting until the claim lands
    retry_initial_delay: float = 0.5
    retry_multiplier: float = 2.0
    retry_max_delay: float = 8.0
    skip_preflight: bool = False
    check_existing_accounts: bool = False
    idempotent_create: bool = True
    refresh_proof_each_attempt: bool = False
    confirm_timeout_seconds: float = 0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"
        frozen = True

    def rpc_url(self) -> str:
        # Prefer Helius RPC if provided to improve reliability.
        return self.helius_rpc_url or self.solana_rpc

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_delay=self.retry_initial_delay,
            multiplier=self.retry_multiplier,
            max_delay=self.retry_max_delay,
        )

    def tx_opts(self) -> TxOpts:
        return TxOpts(skip_preflight=self.skip_preflight, preflight_commitment=Confirmed)

    def targets(self) -> "ClaimTargets":
        return ClaimTargets(
            program_id=load_pubkey("PROGRAM_ID", self.program_id),
            mint=load_pubkey("TOKEN_MINT", self.token_mint),
            transfer_to=load_pubkey("TRANSFER_TO", self.transfer_to),
        )


@dataclass(frozen=True)
class ClaimTargets:
    program_id: Pubkey
    mint: Pubkey
    transfer_to: Pubkey


@dataclass(frozen=True)
class ClaimPlan:
    proof: ClaimProof
    claimant_ata: Pubkey
    destination_ata: Pubkey
    transaction: ClaimTransaction


def load_settings(env_file: Optional[str] = ".env", **overrides) -> Settings:
    try:
        return Settings(_env_file=env_file, **overrides)
    except ValidationError as exc:
        raise ConfigError(f"invalid configuration: {exc}") from exc


def load_pubkey(env_name: str, value: str) -> Pubkey:
    if not value:
        raise ConfigError(f"{env_name} must be set to a valid address")
    try:
        return Pubkey.from_string(value)
    except Exception as exc:  # noqa: BLE001
        raise ConfigError(f"{env_name} is not a valid pubkey: {exc}") from exc


def load_keypair(secret: str) -> Keypair:
    secret = (secret or "").strip()
    if not secret:
        raise ConfigError("PRIVATE_KEY must be set")
    try:
        if secret.startswith("["):
            return Keypair.from_bytes(bytes(json.loads(secret)))
        return Keypair.from_bytes(base58.b58decode(secret))
    except Exception as exc:  # noqa: BLE001
        raise ConfigError(f"Failed to parse PRIVATE_KEY: {exc}") from exc


def account_exists(client, address: Pubkey) -> bool:
    try:
        return client.get_account_info(address).value is not None
    except RPC_ERRORS as exc:
        raise RpcUnavailable(f"account lookup for {address} failed: {exc}") from exc


def latest_blockhash(client):
    try:
        return client.get_latest_blockhash().value.blockhash
    except RPC_ERRORS as exc:
        raise RpcUnavailable(f"blockhash lookup failed: {exc}") from exc


def build_claim_plan(
    targets: ClaimTargets,
    wallet: Keypair,
    proof_client: ClaimProofClient,
    client=None,
    check_existing_accounts: bool = False,
    idempotent: bool = True,
) -> ClaimPlan:
    """Fetch the proof and assemble the unsigned claim transaction.

    Without an existence check the destination ATA is always created and the
    claimant's own ATA is assumed to exist. With the check, only missing
    accounts are created and the rest are declared existing. Creation uses
    the idempotent instruction unless ``idempotent`` is off, in which case a
    destination that already exists fails the transaction.
    """
    claimant = wallet.pubkey()
    proof = proof_client.fetch_proof(claimant)
    claimant_ata = associated_token_address(targets.mint, claimant)
    destination_ata = associated_token_address(targets.mint, targets.transfer_to, allow_owner_off_curve=True)

    existing: List[Pubkey] = []
    create_destination = True
    create_claimant = False
    if check_existing_accounts:
        if client is None:
            raise ValueError("check_existing_accounts requires an RPC client")
        create_destination = not account_exists(client, destination_ata)
        create_claimant = not account_exists(client, claimant_ata)
        if not create_destination:
            existing.append(destination_ata)
        if not create_claimant:
            existing.append(claimant_ata)
    else:
        existing.append(claimant_ata)

    instructions = build_claim_instructions(
        targets.program_id,
        targets.mint,
        claimant,
        targets.transfer_to,
        proof,
        create_destination_ata=create_destination,
        create_claimant_ata=create_claimant,
        idempotent=idempotent or check_existing_accounts,
    )
    transaction = assemble_transaction(instructions, claimant, existing)
    return ClaimPlan(
        proof=proof,
        claimant_ata=claimant_ata,
        destination_ata=destination_ata,
        transaction=transaction,
    )


def plan_for(settings: Settings, targets: ClaimTargets, wallet: Keypair, proof_client, client) -> ClaimPlan:
    return build_claim_plan(
        targets,
        wallet,
        proof_client,
        client,
        check_existing_accounts=settings.check_existing_accounts,
        idempotent=settings.idempotent_create,
    )


def run_claim(
    settings: Settings,
    wallet: Keypair,
    proof_client: ClaimProofClient,
    client,
    sleep: Callable[[float], None] = time.sleep,
) -> SubmissionResult:
    targets = settings.targets()
    plan = plan_for(settings, targets, wallet, proof_client, client)
    logger.info(
        "claim_plan_ready claimant=%s amount=%s destination_ata=%s instructions=%s",
        wallet.pubkey(),
        plan.proof.amount,
        plan.destination_ata,
        len(plan.transaction.instructions),
    )

    pending = [plan.transaction]
    latest = [plan.transaction]

    def build() -> ClaimTransaction:
        if pending:
            return pending.pop()
        if not settings.refresh_proof_each_attempt:
            return plan.transaction
        try:
            latest[0] = plan_for(settings, targets, wallet, proof_client, client).transaction
        except (ProofUnavailable, RpcUnavailable) as exc:
            # a refresh that fails mid-run falls back to the last plan that built
            logger.warning("claim_plan_refresh_failed error=%s", exc)
        return latest[0]

    submitter = ClaimSubmitter(
        client,
        wallet,
        policy=settings.retry_policy(),
        opts=settings.tx_opts(),
        confirm_timeout=settings.confirm_timeout_seconds,
        sleep=sleep,
    )
    return submitter.run(build)


def dry_run(settings: Settings, wallet: Keypair, proof_client: ClaimProofClient, client) -> dict:
    targets = settings.targets()
    plan = plan_for(settings, targets, wallet, proof_client, client)
    derived, _bump = distributor_pda(targets.program_id, targets.mint)
    if derived != plan.proof.merkle_tree:
        # the claim always targets the proof's tree
        logger.warning("distributor_mismatch merkle_tree=%s derived=%s", plan.proof.merkle_tree, derived)
    try:
        decimals: Optional[int] = get_mint_decimals(client, targets.mint)
    except (ValueError, RpcUnavailable) as exc:
        logger.warning("mint_decimals_unavailable mint=%s error=%s", targets.mint, exc)
        decimals = None
    blockhash = latest_blockhash(client)
    return {
        "claimant": str(wallet.pubkey()),
        "distributor": str(plan.proof.merkle_tree),
        "derived_distributor": str(derived),
        "destination_ata": str(plan.destination_ata),
        "amount": plan.proof.amount,
        "amount_ui": format_amount(plan.proof.amount, decimals) if decimals is not None else None,
        "instructions": [instruction_to_dict(ix) for ix in plan.transaction.instructions],
        "message_b64": message_b64(plan.transaction, blockhash),
    }


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Claim an airdrop allocation and forward it to TRANSFER_TO.")
    parser.add_argument("--env-file", default=".env", help="dotenv file with PRIVATE_KEY and overrides")
    parser.add_argument("--dry-run", action="store_true", help="build and print the transaction without sending")
    parser.add_argument("--max-attempts", type=int, default=None, help="submission attempts (0 = unlimited)")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)
    try:
        overrides = {}
        if args.max_attempts is not None:
            overrides["max_attempts"] = args.max_attempts
        settings = load_settings(args.env_file, **overrides)
        wallet = load_keypair(settings.private_key)
        targets = settings.targets()
        client = SolanaClient(settings.rpc_url(), timeout=settings.request_timeout)
        proof_client = ClaimProofClient(targets.mint, settings.claim_proof_url, timeout=settings.request_timeout)
        logger.info("Using RPC: %s wallet=%s transfer_to=%s", settings.rpc_url(), wallet.pubkey(), targets.transfer_to)
        if args.dry_run:
            print(json.dumps(dry_run(settings, wallet, proof_client, client), indent=2))
            return 0
        result = run_claim(settings, wallet, proof_client, client)
    except ClaimError as exc:
        logger.error("claim_failed error=%s", exc)
        return 1

    if result.accepted:
        print("tx", result.signature)
        return 0
    logger.error("claim_not_accepted attempts=%s error=%s", result.attempts, result.error)
    return 2


if __name__ == "__main__":
    sys.exit(main())
