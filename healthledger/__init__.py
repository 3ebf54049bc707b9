"""
HealthLedger backend: ledger -> cache synchronization, doctor/patient
access control, record indexing and search, and wallet-signature login.
"""

__version__ = "0.1.0"
