"""
Metering Module
Token ledger and metered access gateway for hosted AI models

This module provides:
- Per-model rate table and token pricing
- API key and identity token resolution
- Concurrency-safe debits and credits against a prepaid token balance
- Immutable usage audit records
- Stripe webhook reconciliation (exactly-once credits per event)

Collections used:
- accounts: Token balances, tiers, API key sets, pending charges
- api_keys: Credential index (key hash -> account)
- usage_records: Immutable usage audit trail
- token_ledger: Immutable balance movement log
- payment_events: Stripe event audit log
- usage_summaries: Daily usage roll-ups
"""

__version__ = "1.0.0"
