"""Typed per-platform publish options.

Payloads are decoded once at the API boundary and stored on the post as
plain dicts keyed by platform; the dispatcher decodes them again into the
same models before handing them to a platform client.
"""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from crosspost.core.errors import ValidationError
from crosspost.domain.platform import Platform


class _MetadataBase(BaseModel):
    model_config = ConfigDict(extra="forbid")


class TwitterMetadata(_MetadataBase):
    platform: Literal["twitter"] = "twitter"
    reply_to_tweet_id: str | None = None
    quote_tweet_id: str | None = None


class LinkedInMetadata(_MetadataBase):
    platform: Literal["linkedin"] = "linkedin"
    visibility: Literal["PUBLIC", "CONNECTIONS"] = "PUBLIC"


class InstagramMetadata(_MetadataBase):
    platform: Literal["instagram"] = "instagram"
    media_type: Literal["IMAGE", "VIDEO", "REELS", "CAROUSEL"] = "IMAGE"
    location_id: str | None = None
    user_tags: list[str] = Field(default_factory=list)


class FacebookMetadata(_MetadataBase):
    platform: Literal["facebook"] = "facebook"
    page_id: str | None = None
    link: str | None = None


class TikTokMetadata(_MetadataBase):
    platform: Literal["tiktok"] = "tiktok"
    privacy_level: Literal["PUBLIC_TO_EVERYONE", "MUTUAL_FOLLOW_FRIENDS", "SELF_ONLY"] = "PUBLIC_TO_EVERYONE"
    disable_comments: bool = False


PlatformMetadata = Annotated[
    Union[TwitterMetadata, LinkedInMetadata, InstagramMetadata, FacebookMetadata, TikTokMetadata],
    Field(discriminator="platform"),
]

_METADATA_ADAPTER: TypeAdapter = TypeAdapter(PlatformMetadata)

_DEFAULTS: dict[Platform, type[_MetadataBase]] = {
    Platform.TWITTER: TwitterMetadata,
    Platform.LINKEDIN: LinkedInMetadata,
    Platform.INSTAGRAM: InstagramMetadata,
    Platform.FACEBOOK: FacebookMetadata,
    Platform.TIKTOK: TikTokMetadata,
}


def default_metadata_for(platform: Platform) -> PlatformMetadata:
    return _DEFAULTS[platform]()


def decode_platform_metadata(platform: Platform, raw: dict | None) -> PlatformMetadata:
    if not raw:
        return default_metadata_for(platform)
    payload = {"platform": platform.value, **raw}
    if payload["platform"] != platform.value:
        raise ValidationError(f"Metadata for {platform.value} declares platform '{payload['platform']}'")
    try:
        return _METADATA_ADAPTER.validate_python(payload)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid {platform.value} metadata: {exc.errors()[0].get('msg', 'invalid')}") from exc


def encode_metadata_map(raw: dict[str, dict] | None, *, platforms: list[Platform]) -> dict[str, dict]:
    """Validate a request's metadata map and return the JSON form stored on the post."""
    raw = raw or {}
    unknown = sorted(set(raw) - {platform.value for platform in platforms})
    if unknown:
        raise ValidationError(f"Metadata given for platforms not targeted by the post: {', '.join(unknown)}")
    return {
        platform.value: decode_platform_metadata(platform, raw.get(platform.value)).model_dump()
        for platform in platforms
        if platform.value in raw
    }
