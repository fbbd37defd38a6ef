"""Sabaki Facts: x402-gated, signed and chain-reconciled financial facts."""

__version__ = "0.3.0"
