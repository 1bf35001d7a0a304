"""
Core Financing System

Installment financing and accounts receivable for retail and repair shops:
amortization schedules, server-side payment settlement and partial-payment
ledgers, all computed with Decimal and recorded in a hash-chained audit trail.
"""

__version__ = "1.0.0"
