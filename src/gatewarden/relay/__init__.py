"""Local TLS relay."""

from .manager import RelayConfig, TunnelRelayManager

__all__ = ["RelayConfig", "TunnelRelayManager"]
