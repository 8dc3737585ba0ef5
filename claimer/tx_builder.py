import base64
import hashlib
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple, Union

from borsh_construct import CStruct, U64, U8, Vec
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import MessageV0
from solders.pubkey import Pubkey

from claimer.claim_proof import ClaimProof
from claimer.errors import DerivationError, InvalidProofEntry, TransactionOrderError

SYS_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")

DISTRIBUTOR_SEED = b"MerkleDistributor"
CLAIM_STATUS_SEED = b"ClaimStatus"

MAX_SEED_LEN = 32
MAX_SEEDS = 16
PROOF_ENTRY_LEN = 32
U64_MAX = 2**64 - 1

# Associated token program instruction tags
ATA_CREATE = b"\x00"
ATA_CREATE_IDEMPOTENT = b"\x01"
# SPL token program instruction tags
TOKEN_TRANSFER = 3

NewClaimLayout = CStruct(
    "amount_unlocked" / U64,
    "amount_locked" / U64,
    "proof" / Vec(U8[PROOF_ENTRY_LEN]),
)


def sighash(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


def to_pubkey(value: Union[str, Pubkey]) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    return Pubkey.from_string(value)


# --- address derivation -----------------------------------------------------


def derive_address(program_id: Pubkey, seeds: Sequence[bytes]) -> Tuple[Pubkey, int]:
    """Find the program-derived address and bump for ``seeds`` under ``program_id``.

    Seeds are checked against the runtime limits first: a seed set that can
    never derive means one of the fixed protocol constants is wrong.
    """
    seeds = [bytes(s) for s in seeds]
    if len(seeds) >= MAX_SEEDS:
        raise DerivationError(f"too many seeds ({len(seeds)}); at most {MAX_SEEDS - 1} plus the bump")
    for seed in seeds:
        if len(seed) > MAX_SEED_LEN:
            raise DerivationError(f"seed of {len(seed)} bytes exceeds {MAX_SEED_LEN}")
    return Pubkey.find_program_address(seeds, program_id)


def distributor_pda(program_id: Pubkey, mint: Pubkey) -> Tuple[Pubkey, int]:
    return derive_address(program_id, [DISTRIBUTOR_SEED, bytes(mint)])


def claim_status_pda(program_id: Pubkey, claimant: Pubkey, distributor: Pubkey) -> Tuple[Pubkey, int]:
    return derive_address(program_id, [CLAIM_STATUS_SEED, bytes(claimant), bytes(distributor)])


def associated_token_address(mint: Pubkey, owner: Pubkey, allow_owner_off_curve: bool = False) -> Pubkey:
    if not allow_owner_off_curve and not owner.is_on_curve():
        raise DerivationError(f"owner {owner} is off curve; pass allow_owner_off_curve for program-owned owners")
    return Pubkey.find_program_address(
        [bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )[0]


# --- instruction encoding ---------------------------------------------------


def pad32(entry: bytes) -> bytes:
    """Left-pad a proof hash with zero bytes to exactly 32 bytes."""
    entry = bytes(entry)
    if len(entry) > PROOF_ENTRY_LEN:
        raise InvalidProofEntry(f"invalid length {len(entry)}")
    return entry.rjust(PROOF_ENTRY_LEN, b"\x00")


def _check_u64(name: str, value: int) -> int:
    value = int(value)
    if value < 0 or value > U64_MAX:
        raise ValueError(f"{name} {value} is outside the u64 range")
    return value


def encode_new_claim(amount_unlocked: int, amount_locked: int, proof: Iterable[bytes]) -> bytes:
    data = NewClaimLayout.build(
        {
            "amount_unlocked": _check_u64("amount_unlocked", amount_unlocked),
            "amount_locked": _check_u64("amount_locked", amount_locked),
            "proof": [list(pad32(p)) for p in proof],
        }
    )
    return sighash("new_claim") + data


def build_create_ata_ix(
    payer: Pubkey,
    owner: Pubkey,
    mint: Pubkey,
    ata: Optional[Pubkey] = None,
    idempotent: bool = False,
) -> Instruction:
    if ata is None:
        ata = associated_token_address(mint, owner, allow_owner_off_curve=True)
    metas = [
        AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
        AccountMeta(pubkey=ata, is_signer=False, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=False, is_writable=False),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    data = ATA_CREATE_IDEMPOTENT if idempotent else ATA_CREATE
    return Instruction(program_id=ASSOCIATED_TOKEN_PROGRAM_ID, data=data, accounts=metas)


def build_claim_ix(program_id: Pubkey, mint: Pubkey, claimant: Pubkey, proof: ClaimProof) -> Instruction:
    distributor = proof.merkle_tree
    claim_status, _bump = claim_status_pda(program_id, claimant, distributor)
    # distributor vault is owned by the distributor PDA
    distributor_ata = associated_token_address(mint, distributor, allow_owner_off_curve=True)
    claimant_ata = associated_token_address(mint, claimant)
    accounts = [
        AccountMeta(pubkey=distributor, is_signer=False, is_writable=True),
        AccountMeta(pubkey=claim_status, is_signer=False, is_writable=True),
        AccountMeta(pubkey=distributor_ata, is_signer=False, is_writable=True),
        AccountMeta(pubkey=claimant_ata, is_signer=False, is_writable=True),
        AccountMeta(pubkey=claimant, is_signer=True, is_writable=True),
        AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    data = encode_new_claim(proof.amount, 0, proof.proof)
    return Instruction(program_id=program_id, data=data, accounts=accounts)


def build_spl_transfer_ix(source: Pubkey, dest: Pubkey, owner: Pubkey, amount: int) -> Instruction:
    data = bytes([TOKEN_TRANSFER]) + _check_u64("amount", amount).to_bytes(8, "little")
    metas = [
        AccountMeta(pubkey=source, is_signer=False, is_writable=True),
        AccountMeta(pubkey=dest, is_signer=False, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=True, is_writable=False),
    ]
    return Instruction(program_id=TOKEN_PROGRAM_ID, data=data, accounts=metas)


def build_claim_instructions(
    program_id: Pubkey,
    mint: Pubkey,
    claimant: Pubkey,
    destination_owner: Pubkey,
    proof: ClaimProof,
    create_destination_ata: bool = True,
    create_claimant_ata: bool = False,
    idempotent: bool = False,
) -> List[Instruction]:
    """Build the claim sequence: account creation, claim, then transfer of the full amount."""
    claimant_ata = associated_token_address(mint, claimant)
    destination_ata = associated_token_address(mint, destination_owner, allow_owner_off_curve=True)
    instructions: List[Instruction] = []
    if create_destination_ata:
        instructions.append(build_create_ata_ix(claimant, destination_owner, mint, destination_ata, idempotent))
    if create_claimant_ata:
        instructions.append(build_create_ata_ix(claimant, claimant, mint, claimant_ata, idempotent))
    instructions.append(build_claim_ix(program_id, mint, claimant, proof))
    instructions.append(build_spl_transfer_ix(claimant_ata, destination_ata, claimant, proof.amount))
    return instructions


def instruction_to_dict(ix: Instruction) -> dict:
    return {
        "program_id": str(ix.program_id),
        "keys": [
            {
                "pubkey": str(k.pubkey),
                "is_signer": k.is_signer,
                "is_writable": k.is_writable,
            }
            for k in ix.accounts
        ],
        "data": base64.b64encode(bytes(ix.data)).decode(),
    }


# --- transaction assembly ---------------------------------------------------


def created_account(ix: Instruction) -> Optional[Pubkey]:
    if ix.program_id != ASSOCIATED_TOKEN_PROGRAM_ID:
        return None
    if bytes(ix.data) not in (b"", ATA_CREATE, ATA_CREATE_IDEMPOTENT) or len(ix.accounts) < 2:
        return None
    return ix.accounts[1].pubkey


def is_token_transfer(ix: Instruction) -> bool:
    data = bytes(ix.data)
    return ix.program_id == TOKEN_PROGRAM_ID and len(data) == 9 and data[0] == TOKEN_TRANSFER


def validate_instruction_order(
    instructions: Sequence[Instruction], existing_accounts: Iterable[Pubkey] = ()
) -> None:
    existing = set(existing_accounts)
    created_at: Dict[Pubkey, int] = {}
    for idx, ix in enumerate(instructions):
        account = created_account(ix)
        if account is not None:
            created_at.setdefault(account, idx)

    for idx, ix in enumerate(instructions):
        for meta in ix.accounts:
            created = created_at.get(meta.pubkey)
            if meta.is_writable and created is not None and created > idx:
                raise TransactionOrderError(
                    f"instruction {idx} writes {meta.pubkey} before it is created by instruction {created}"
                )
        if is_token_transfer(ix):
            for meta in ix.accounts[:2]:
                if meta.pubkey not in created_at and meta.pubkey not in existing:
                    raise TransactionOrderError(
                        f"transfer at instruction {idx} uses {meta.pubkey}, which is neither created "
                        "earlier nor known to exist"
                    )


@dataclass(frozen=True)
class ClaimTransaction:
    """Unsigned, ordered instruction bundle. The blockhash is attached at compile time."""

    instructions: Tuple[Instruction, ...]
    payer: Pubkey
    existing_accounts: FrozenSet[Pubkey] = field(default_factory=frozenset)

    def compile(self, blockhash: Union[str, Hash]) -> MessageV0:
        if isinstance(blockhash, str):
            blockhash = Hash.from_string(blockhash)
        return MessageV0.try_compile(self.payer, list(self.instructions), [], blockhash)


def assemble_transaction(
    instructions: Sequence[Instruction],
    payer: Pubkey,
    existing_accounts: Iterable[Pubkey] = (),
) -> ClaimTransaction:
    existing = frozenset(existing_accounts)
    validate_instruction_order(instructions, existing)
    return ClaimTransaction(instructions=tuple(instructions), payer=payer, existing_accounts=existing)


def message_b64(transaction: ClaimTransaction, blockhash: Union[str, Hash]) -> str:
    return base64.b64encode(bytes(transaction.compile(blockhash))).decode()
