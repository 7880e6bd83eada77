"""Health probing for deployed services."""

from .prober import CheckKind, HealthCheckSpec, HealthProber, ProbeResult, ProbeStatus

__all__ = ["CheckKind", "HealthCheckSpec", "HealthProber", "ProbeResult", "ProbeStatus"]
