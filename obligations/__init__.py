"""
Obligations Engine

Tracks money lent and borrowed between individuals and scheduled recurring
bills, with Decimal money math, owner-scoped access and a hash-chained
audit trail.
"""

__version__ = "1.0.0"
