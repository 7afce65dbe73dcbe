"""Single Packet Authorization."""

from .authorizer import SpaAuthorizer, build_spa_args, redact

__all__ = ["SpaAuthorizer", "build_spa_args", "redact"]
