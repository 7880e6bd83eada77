"""Post-deployment verification."""

from .checks import CheckOutcome, VerificationReport, VerificationStage

__all__ = ["CheckOutcome", "VerificationReport", "VerificationStage"]
