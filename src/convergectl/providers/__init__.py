"""Provider interfaces for convergectl."""
from __future__ import annotations

from .firewall import FirewallError, FirewallProvider
from .nginx import NginxError, NginxProvider
from .pm2 import Pm2Error, Pm2Provider
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "FirewallError",
    "FirewallProvider",
    "NginxError",
    "NginxProvider",
    "Pm2Error",
    "Pm2Provider",
    "SystemdError",
    "SystemdProvider",
]
