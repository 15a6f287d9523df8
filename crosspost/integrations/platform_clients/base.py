import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import ClassVar

from crosspost.core.errors import DispatchError, ProfileFetchError
from crosspost.domain.platform import Platform

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlatformProfile:
    platform_user_id: str
    username: str | None = None
    display_name: str | None = None
    email: str | None = None
    avatar_url: str | None = None
    profile_url: str | None = None
    follower_count: int = 0
    following_count: int = 0
    posts_count: int = 0
    platform_data: dict = field(default_factory=dict)


@dataclass(frozen=True)
class PublishResult:
    success: bool
    platform_post_id: str | None = None
    platform_post_url: str | None = None
    error: str | None = None
    metadata: dict = field(default_factory=dict)


class BasePlatformClient(ABC):
    """Capability a deployment binds per platform.

    ``get_profile`` runs inside the OAuth callback request and is sync;
    ``publish_post`` runs in the dispatcher's event loop.
    """

    platform: ClassVar[Platform | None] = None

    def __init__(self, *, access_token: str, platform_user_id: str | None = None) -> None:
        self.access_token = access_token
        self.platform_user_id = platform_user_id

    @abstractmethod
    def get_profile(self) -> PlatformProfile:
        raise NotImplementedError

    @abstractmethod
    async def publish_post(self, *, content: str, media_urls: list[str], metadata) -> PublishResult:
        raise NotImplementedError


class UnconfiguredPlatformClient(BasePlatformClient):
    def __init__(self, platform: Platform, *, access_token: str, platform_user_id: str | None = None) -> None:
        super().__init__(access_token=access_token, platform_user_id=platform_user_id)
        self.requested_platform = platform

    def get_profile(self) -> PlatformProfile:
        raise ProfileFetchError(f"No platform client bound for '{self.requested_platform.value}'")

    async def publish_post(self, *, content: str, media_urls: list[str], metadata) -> PublishResult:
        raise DispatchError(f"No platform client bound for '{self.requested_platform.value}'")


async def safe_publish(
    client: BasePlatformClient,
    *,
    content: str,
    media_urls: list[str],
    metadata,
) -> PublishResult:
    """Run ``publish_post`` and fold every exception into a failed result."""
    try:
        result = await client.publish_post(content=content, media_urls=media_urls, metadata=metadata)
    except Exception as exc:
        logger.warning(
            "platform_publish_exception client=%s error=%s",
            client.__class__.__name__,
            exc,
        )
        return PublishResult(success=False, error=str(exc) or exc.__class__.__name__)

    if not isinstance(result, PublishResult):
        return PublishResult(success=False, error="Platform client returned no publish result")
    if not result.success and not result.error:
        return PublishResult(success=False, error="Platform rejected the post", metadata=result.metadata)
    return result


def fetch_profile(client: BasePlatformClient) -> PlatformProfile:
    try:
        profile = client.get_profile()
    except ProfileFetchError:
        raise
    except Exception as exc:
        logger.warning("platform_profile_exception client=%s error=%s", client.__class__.__name__, exc)
        raise ProfileFetchError(f"Profile fetch failed: {exc.__class__.__name__}") from exc
    if not isinstance(profile, PlatformProfile) or not profile.platform_user_id:
        raise ProfileFetchError("Platform client returned no profile identity")
    return profile
