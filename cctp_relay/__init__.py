"""Relay Circle CCTP V2 transfers: fetch burn attestations and finalise them on the destination chain."""
