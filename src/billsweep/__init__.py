"""
BILLSWEEP - Hourly usage billing for prepaid wallets.

Charges provisioned resources (VMs, managed apps, add-ons) for the whole
hours they have existed, exactly once per hour, and records every attempt in
an append-only ledger.
"""

__version__ = "1.0.0"
