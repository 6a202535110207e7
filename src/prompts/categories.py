"""Configured template categories with legacy aliases."""

from __future__ import annotations

from typing import Tuple

from src.core.errors import InvalidRequest


CATEGORY_BLOG_POST = "blog_post"
CATEGORY_SOCIAL_MEDIA = "social_media"
CATEGORY_VIDEO_SCRIPT = "video_script"
CATEGORY_PRAYER = "prayer"
CATEGORY_ANALYSIS = "analysis"
CATEGORY_IMAGE_GENERATION = "image_generation"

TEXT_CATEGORIES: Tuple[str, ...] = (
    CATEGORY_BLOG_POST,
    CATEGORY_SOCIAL_MEDIA,
    CATEGORY_VIDEO_SCRIPT,
    CATEGORY_PRAYER,
    CATEGORY_ANALYSIS,
    "email",
    "newsletter",
    "devotional",
    "sermon",
)
MEDIA_CATEGORIES: Tuple[str, ...] = (CATEGORY_IMAGE_GENERATION,)
ALL_CATEGORIES: Tuple[str, ...] = TEXT_CATEGORIES + MEDIA_CATEGORIES

CATEGORY_ALIASES = {
    "blog": CATEGORY_BLOG_POST,
    "article": CATEGORY_BLOG_POST,
    "social": CATEGORY_SOCIAL_MEDIA,
    "video": CATEGORY_VIDEO_SCRIPT,
    "prayer_points": CATEGORY_PRAYER,
    "image": CATEGORY_IMAGE_GENERATION,
}


def canonicalize_category(category: str | None) -> str:
    normalized = str(category or "").strip().lower()
    return CATEGORY_ALIASES.get(normalized, normalized)


def validate_category(category: str | None) -> str:
    normalized = canonicalize_category(category)
    if normalized not in ALL_CATEGORIES:
        raise InvalidRequest(
            f"unknown_category {normalized or '<empty>'}",
            details={"allowed": list(ALL_CATEGORIES)},
        )
    return normalized


def is_text_category(category: str | None) -> bool:
    return canonicalize_category(category) in TEXT_CATEGORIES
