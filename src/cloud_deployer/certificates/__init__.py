"""TLS certificate lifecycle for the public endpoint."""

from .stage import CertificateStage, CertificateState

__all__ = ["CertificateStage", "CertificateState"]
