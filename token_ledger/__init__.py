"""
Token Ledger

A fungible-token ledger with balance accounting, delegated-transfer
allowances and single-authority minting, plus the runtime, storage and
HTTP collaborators that host it.
"""

__version__ = "1.0.0"
