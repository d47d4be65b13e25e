"""
Deferred seller payouts.

Lets marketplace sellers accept payments before they finish identity
verification with Stripe Connect. Until the seller is verified the platform
holds the funds and tracks the seller's share in an earnings ledger; once
verification completes the accumulated balance is settled in one transfer.
"""

__version__ = "1.0.0"
