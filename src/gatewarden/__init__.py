"""Gatewarden - bring up a VPN tunnel behind a port-knocked gateway."""

__version__ = "0.1.0"
