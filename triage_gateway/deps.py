"""FastAPI dependencies for gateway state resolution."""

from __future__ import annotations

from .app_state import GatewayState, get_state


async def get_gateway_state() -> GatewayState:
    return get_state()
