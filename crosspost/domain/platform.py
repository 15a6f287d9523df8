from enum import StrEnum


class Platform(StrEnum):
    TWITTER = "twitter"
    LINKEDIN = "linkedin"
    INSTAGRAM = "instagram"
    FACEBOOK = "facebook"
    TIKTOK = "tiktok"


def parse_platform(value: str) -> Platform | None:
    try:
        return Platform((value or "").strip().lower())
    except ValueError:
        return None
