from crosspost.integrations.platform_clients.base import (
    BasePlatformClient,
    PlatformProfile,
    PublishResult,
    UnconfiguredPlatformClient,
    fetch_profile,
    safe_publish,
)
from crosspost.integrations.platform_clients.factory import (
    bind_platform_client,
    get_platform_client,
    list_bound_platforms,
    load_platform_client_bindings,
    reset_platform_clients,
)

__all__ = [
    "BasePlatformClient",
    "PlatformProfile",
    "PublishResult",
    "UnconfiguredPlatformClient",
    "fetch_profile",
    "safe_publish",
    "bind_platform_client",
    "get_platform_client",
    "list_bound_platforms",
    "load_platform_client_bindings",
    "reset_platform_clients",
]
