"""Static lookup of per-platform OAuth endpoints and capability limits.

Every member of ``Platform`` has exactly one ``PlatformSpec`` entry; the
module refuses to import if the table and the enum drift apart.
"""

from dataclasses import dataclass

from crosspost.core.config import Settings, settings
from crosspost.domain.platform import Platform


@dataclass(frozen=True)
class PlatformLimits:
    max_text_length: int
    max_media_count: int
    requires_media: bool
    supported_media_types: tuple[str, ...]


@dataclass(frozen=True)
class PlatformOAuthEndpoints:
    authorize_url: str
    token_url: str
    use_pkce: bool = True


@dataclass(frozen=True)
class PlatformSpec:
    platform: Platform
    display_name: str
    oauth: PlatformOAuthEndpoints
    limits: PlatformLimits


@dataclass(frozen=True)
class PlatformCredentials:
    client_id: str
    client_secret: str
    scopes: list[str]


PLATFORM_REGISTRY: dict[Platform, PlatformSpec] = {
    Platform.TWITTER: PlatformSpec(
        platform=Platform.TWITTER,
        display_name="Twitter",
        oauth=PlatformOAuthEndpoints(
            authorize_url="https://twitter.com/i/oauth2/authorize",
            token_url="https://api.twitter.com/2/oauth2/token",
        ),
        limits=PlatformLimits(
            max_text_length=280,
            max_media_count=4,
            requires_media=False,
            supported_media_types=("image", "video", "gif"),
        ),
    ),
    Platform.LINKEDIN: PlatformSpec(
        platform=Platform.LINKEDIN,
        display_name="LinkedIn",
        oauth=PlatformOAuthEndpoints(
            authorize_url="https://www.linkedin.com/oauth/v2/authorization",
            token_url="https://www.linkedin.com/oauth/v2/accessToken",
            use_pkce=False,
        ),
        limits=PlatformLimits(
            max_text_length=3000,
            max_media_count=9,
            requires_media=False,
            supported_media_types=("image", "video"),
        ),
    ),
    Platform.INSTAGRAM: PlatformSpec(
        platform=Platform.INSTAGRAM,
        display_name="Instagram",
        oauth=PlatformOAuthEndpoints(
            authorize_url="https://api.instagram.com/oauth/authorize",
            token_url="https://api.instagram.com/oauth/access_token",
        ),
        limits=PlatformLimits(
            max_text_length=2200,
            max_media_count=10,
            requires_media=True,
            supported_media_types=("image", "video"),
        ),
    ),
    Platform.FACEBOOK: PlatformSpec(
        platform=Platform.FACEBOOK,
        display_name="Facebook",
        oauth=PlatformOAuthEndpoints(
            authorize_url="https://www.facebook.com/v21.0/dialog/oauth",
            token_url="https://graph.facebook.com/v21.0/oauth/access_token",
        ),
        limits=PlatformLimits(
            max_text_length=63206,
            max_media_count=10,
            requires_media=False,
            supported_media_types=("image", "video"),
        ),
    ),
    Platform.TIKTOK: PlatformSpec(
        platform=Platform.TIKTOK,
        display_name="TikTok",
        oauth=PlatformOAuthEndpoints(
            authorize_url="https://www.tiktok.com/v2/auth/authorize/",
            token_url="https://open.tiktokapis.com/v2/oauth/token/",
        ),
        limits=PlatformLimits(
            max_text_length=150,
            max_media_count=1,
            requires_media=True,
            supported_media_types=("video",),
        ),
    ),
}

if set(PLATFORM_REGISTRY) != set(Platform):
    missing = sorted(set(Platform) - set(PLATFORM_REGISTRY))
    raise RuntimeError(f"Platform registry incomplete: {missing}")


def get_platform_spec(platform: Platform) -> PlatformSpec:
    return PLATFORM_REGISTRY[platform]


def get_platform_limits(platform: Platform) -> PlatformLimits:
    return PLATFORM_REGISTRY[platform].limits


def get_platform_credentials(platform: Platform, config: Settings | None = None) -> PlatformCredentials | None:
    """Client credentials from settings; None when the platform is not configured."""
    config = config or settings
    prefix = platform.value
    client_id = getattr(config, f"{prefix}_client_id", None)
    client_secret = getattr(config, f"{prefix}_client_secret", None)
    if not client_id or not client_secret:
        return None
    raw_scope = str(getattr(config, f"{prefix}_oauth_scope", "") or "")
    scopes = [value for value in raw_scope.replace(",", " ").split() if value]
    return PlatformCredentials(client_id=client_id, client_secret=client_secret, scopes=scopes)


def validate_content_for_platform(platform: Platform, *, content: str, media_urls: list[str] | None) -> list[str]:
    limits = get_platform_limits(platform)
    media_count = len(media_urls or [])
    errors: list[str] = []
    if limits.requires_media and media_count == 0:
        errors.append(f"{platform.value} requires at least one media file")
    if len(content or "") > limits.max_text_length:
        errors.append(f"Content exceeds {platform.value} character limit of {limits.max_text_length}")
    if media_count > limits.max_media_count:
        errors.append(f"Too many media files. {platform.value} supports maximum {limits.max_media_count}")
    return errors
