"""API gateway package."""

from .service import GatewayRequest, GatewayResponse, GatewayService  # noqa: F401
from .web import GatewayWebApp  # noqa: F401

__all__ = ["GatewayRequest", "GatewayResponse", "GatewayService", "GatewayWebApp"]
