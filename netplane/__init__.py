"""Network control plane for OVS-backed VPCs, subnets and security groups."""

__version__ = "0.1.0"
