"""Merkle-distributor airdrop claimer for Solana."""
