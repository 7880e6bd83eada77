"""Infrastructure provisioning adapters."""

from .gcloud import GcloudPreflight
from .terraform import InfraPlan, TerraformProvisioner

__all__ = ["GcloudPreflight", "InfraPlan", "TerraformProvisioner"]
