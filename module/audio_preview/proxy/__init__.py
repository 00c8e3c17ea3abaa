# Proxy module
from .pool import ProxyPool, ProxyHandle, ProxyState
from .tunnel import ProxyTunnel

__all__ = [
    "ProxyPool",
    "ProxyHandle",
    "ProxyState",
    "ProxyTunnel",
]
