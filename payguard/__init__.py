"""
PayGuard - Payroll Integrity Core

Identity hashing, ghost worker / duplicate / salary screening and
Stellar Soroban proofs for payroll batches.
"""

__version__ = "0.1.0"
