"""
Funds Ledger

Funds transfers (internal, external, wire) and loan servicing (payments,
amortization, early payoff, late fees) over a versioned ledger, with
compensating sagas and a hash-chained audit trail.
"""

__version__ = "1.0.0"
