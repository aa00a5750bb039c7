"""
Chapter Case File Service
=========================

Case file assembly and issuance for chapter (preventive-justice) cases:
1. Append-only proceedings log (Roznama) per case
2. Ordered, hashed, immutable case file issuance
3. Form and case status lifecycle
"""

__version__ = "1.0.0"
