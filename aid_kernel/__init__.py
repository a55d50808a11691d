"""
Aid Kernel - Allocation & Funding Consistency Engine

The transactional core of the aid marketplace:
- Percentage-based funding ledger that never over-commits
- Quantity-safe allocation of donated stock
- Request lifecycle state machine
- Self-dealing prevention
- Append-only, hash-chained audit trail
"""

__version__ = "0.1.0"
