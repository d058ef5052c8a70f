"""
nexusfleet

Fleet reconciliation and remote-provisioning engine for WireGuard VPN nodes.
"""

__version__ = "1.0.0"
