"""Deferred payouts core: provisioning, routing, ledger and settlement."""
