"""Post-install hooks"""

from devharbor.hooks.registry import HookContext, HookRegistry, HookResult, PostInstallHook
from devharbor.hooks.proxy_hook import (
    PROXY_SERVICE_ID,
    CertificateInstaller,
    ProjectProxySync,
    ProxyConfigurator,
    make_proxy_hook,
)

__all__ = [
    "HookContext",
    "HookRegistry",
    "HookResult",
    "PostInstallHook",
    "PROXY_SERVICE_ID",
    "CertificateInstaller",
    "ProjectProxySync",
    "ProxyConfigurator",
    "make_proxy_hook",
]
