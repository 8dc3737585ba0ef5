import base64
import struct
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from solders.pubkey import Pubkey

from claimer.errors import RPC_ERRORS, RpcUnavailable

# SPL token Mint: COption<Pubkey> authority, u64 supply, u8 decimals,
# bool initialized, COption<Pubkey> freeze authority (82 bytes)
MINT_LAYOUT = struct.Struct("<I32sQBBI32s")


@dataclass(frozen=True)
class MintInfo:
    supply: int
    decimals: int
    is_initialized: bool
    mint_authority: Optional[Pubkey] = None
    freeze_authority: Optional[Pubkey] = None


def parse_mint(data: bytes) -> MintInfo:
    if len(data) < MINT_LAYOUT.size:
        raise ValueError(f"Mint account too short: {len(data)} bytes")
    auth_tag, auth, supply, decimals, initialized, freeze_tag, freeze = MINT_LAYOUT.unpack_from(data)
    return MintInfo(
        supply=supply,
        decimals=decimals,
        is_initialized=initialized == 1,
        mint_authority=Pubkey.from_bytes(auth) if auth_tag else None,
        freeze_authority=Pubkey.from_bytes(freeze) if freeze_tag else None,
    )


def account_bytes(data) -> bytes:
    """Account data as raw bytes; JSON-RPC answers carry ``[base64, "base64"]``."""
    if isinstance(data, (list, tuple)):
        data = data[0]
    if isinstance(data, str):
        return base64.b64decode(data)
    return bytes(data)


def get_mint_decimals(client, mint: Pubkey) -> int:
    try:
        value = client.get_account_info(mint).value
    except RPC_ERRORS as exc:
        raise RpcUnavailable(f"mint lookup for {mint} failed: {exc}") from exc
    if value is None or value.data is None:
        raise ValueError(f"Mint account {mint} not found on-chain")
    info = parse_mint(account_bytes(value.data))
    if not info.is_initialized:
        raise ValueError(f"Mint account {mint} is not initialized")
    return info.decimals


def format_amount(raw: int, decimals: int) -> str:
    """Render a raw token amount in whole-token units, e.g. 1500000 @ 6 -> '1.5'."""
    value = Decimal(int(raw)).scaleb(-int(decimals))
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text
