import importlib
import logging
from collections.abc import Callable
from functools import partial

from crosspost.core.errors import PlatformClientError
from crosspost.domain.platform import Platform, parse_platform
from crosspost.integrations.platform_clients.base import BasePlatformClient, UnconfiguredPlatformClient

logger = logging.getLogger(__name__)

ClientFactory = Callable[..., BasePlatformClient]


def _unconfigured_factories() -> dict[Platform, ClientFactory]:
    return {platform: partial(UnconfiguredPlatformClient, platform) for platform in Platform}


_CLIENT_FACTORIES: dict[Platform, ClientFactory] = _unconfigured_factories()


def bind_platform_client(platform: Platform, factory: ClientFactory) -> None:
    _CLIENT_FACTORIES[platform] = factory
    logger.info("platform_client_bound platform=%s factory=%s", platform.value, getattr(factory, "__name__", factory))


def reset_platform_clients() -> None:
    _CLIENT_FACTORIES.clear()
    _CLIENT_FACTORIES.update(_unconfigured_factories())


def list_bound_platforms() -> list[str]:
    return sorted(
        platform.value
        for platform, factory in _CLIENT_FACTORIES.items()
        if not (isinstance(factory, partial) and factory.func is UnconfiguredPlatformClient)
    )


def get_platform_client(
    platform: Platform,
    *,
    access_token: str,
    platform_user_id: str | None = None,
) -> BasePlatformClient:
    factory = _CLIENT_FACTORIES[platform]
    try:
        return factory(access_token=access_token, platform_user_id=platform_user_id)
    except Exception as exc:
        logger.exception("platform_client_build_failed platform=%s", platform.value)
        raise PlatformClientError(
            f"Could not initialise {platform.value} client: {exc.__class__.__name__}: {exc}"
        ) from exc


def load_platform_client_bindings(raw: str) -> list[str]:
    """Bind clients from ``"twitter=pkg.module:Class,linkedin=..."``.

    Unknown platform names and unimportable targets are logged and skipped
    so a single bad entry does not take the worker down.
    """
    bound: list[str] = []
    for item in (raw or "").split(","):
        item = item.strip()
        if not item:
            continue
        name, _, target = item.partition("=")
        platform = parse_platform(name)
        module_name, _, attr = target.strip().partition(":")
        if platform is None or not module_name or not attr:
            logger.warning("platform_client_binding_invalid entry=%s", item)
            continue
        try:
            factory = getattr(importlib.import_module(module_name), attr)
        except (ImportError, AttributeError) as exc:
            logger.warning("platform_client_binding_skip entry=%s reason=%s", item, exc)
            continue
        bind_platform_client(platform, factory)
        bound.append(platform.value)
    return bound
