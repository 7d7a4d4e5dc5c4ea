"""Independent, read-only verification of a plan against the live system."""

from devincubator.results import VerificationResult
from devincubator.verification.harness import Harness

__all__ = ["Harness", "VerificationResult"]
