"""
Verification of tenant durability in the object store.

Invariants:
    - Verification reads the store only, never the session
    - Missing required critical files fail; everything else is reported
"""

from .verifier import VerificationEngine, VerificationResult

__all__ = ["VerificationEngine", "VerificationResult"]
