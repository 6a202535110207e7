"""Category-specific parsers turning provider text into structured content data."""

from __future__ import annotations

import json
import re
from typing import Any, Callable, Dict, List

from src.core.errors import ParseError
from src.prompts.categories import (
    CATEGORY_ANALYSIS,
    CATEGORY_BLOG_POST,
    CATEGORY_PRAYER,
    CATEGORY_SOCIAL_MEDIA,
    CATEGORY_VIDEO_SCRIPT,
    canonicalize_category,
)


SOCIAL_PLATFORMS = ("facebook", "instagram", "linkedin", "twitter")
DEFAULT_SEGMENT_DURATION = 60
MIN_PRAYER_POINT_LENGTH = 10

PRAYER_THEMES: Dict[str, tuple[str, ...]] = {
    "healing": ("heal", "health", "recovery", "restore"),
    "guidance": ("guide", "direction", "wisdom", "lead"),
    "peace": ("peace", "calm", "comfort", "rest"),
    "provision": ("provide", "supply", "need", "provision"),
    "protection": ("protect", "safe", "security", "guard"),
    "justice": ("justice", "fair", "right", "truth"),
    "hope": ("hope", "future", "tomorrow", "better"),
}

_FENCE_PATTERN = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n(.*?)\n?```\s*$", re.DOTALL)
_NUMBERING_PATTERN = re.compile(r"^\s*(?:\d+[\.\)]|[-*•])\s*")
_TITLE_PREFIX_PATTERN = re.compile(r"^\s*(?:#+\s*|title\s*:\s*)", re.IGNORECASE)


def strip_code_fence(text: str) -> str:
    stripped = text.strip()
    match = _FENCE_PATTERN.match(stripped)
    if match:
        return match.group(1).strip()
    return stripped


def _load_json(text: str, *, category: str) -> Any:
    try:
        return json.loads(strip_code_fence(text))
    except ValueError as exc:
        raise ParseError(f"{category}_response_not_json", details={"category": category}) from exc


def _hashtags(value: Any) -> List[str]:
    if isinstance(value, str):
        value = value.split()
    if not isinstance(value, list):
        return []
    tags: List[str] = []
    for item in value:
        tag = str(item).strip()
        if not tag:
            continue
        tags.append(tag if tag.startswith("#") else f"#{tag}")
    return tags


def parse_social_media(text: str) -> Dict[str, Any]:
    parsed = _load_json(text, category=CATEGORY_SOCIAL_MEDIA)
    if not isinstance(parsed, dict):
        raise ParseError("social_media_response_not_object")

    posts: List[Dict[str, Any]] = []
    for index, platform in enumerate(SOCIAL_PLATFORMS, start=1):
        entry = parsed.get(platform)
        if entry is None:
            continue
        if isinstance(entry, str):
            post_text, hashtags = entry, []
        elif isinstance(entry, dict):
            post_text, hashtags = str(entry.get("text") or ""), _hashtags(entry.get("hashtags"))
        else:
            raise ParseError(f"social_media_platform_invalid {platform}")
        if not post_text.strip():
            raise ParseError(f"social_media_post_empty {platform}")
        posts.append(
            {
                "platform": platform,
                "text": post_text.strip(),
                "hashtags": hashtags,
                "order_number": index,
            }
        )
    if not posts:
        raise ParseError("social_media_no_platform_posts", details={"expected": list(SOCIAL_PLATFORMS)})
    return {"posts": posts}


def _segment_duration(value: Any) -> int:
    try:
        duration = int(value)
    except (TypeError, ValueError):
        return DEFAULT_SEGMENT_DURATION
    return duration if duration > 0 else DEFAULT_SEGMENT_DURATION


def parse_video_script(text: str) -> Dict[str, Any]:
    parsed = _load_json(text, category=CATEGORY_VIDEO_SCRIPT)
    if isinstance(parsed, list):
        parsed = {"segments": parsed}
    if not isinstance(parsed, dict):
        raise ParseError("video_script_response_not_object")

    raw_segments = parsed.get("segments")
    if raw_segments is None and parsed.get("script"):
        raw_segments = [{"text": parsed.get("script"), "duration": parsed.get("duration")}]
    if not isinstance(raw_segments, list) or not raw_segments:
        raise ParseError("video_script_missing_segments")

    segments: List[Dict[str, Any]] = []
    for index, item in enumerate(raw_segments, start=1):
        if isinstance(item, str):
            item = {"text": item}
        if not isinstance(item, dict) or not str(item.get("text") or "").strip():
            raise ParseError(f"video_script_segment_invalid index={index}")
        segments.append(
            {
                "order_number": index,
                "text": str(item["text"]).strip(),
                "duration": _segment_duration(item.get("duration")),
            }
        )

    suggestions = parsed.get("visualSuggestions", parsed.get("visual_suggestions", []))
    return {
        "title": str(parsed.get("title") or "Video Script"),
        "segments": segments,
        "total_duration": sum(segment["duration"] for segment in segments),
        "visual_suggestions": [str(item) for item in suggestions] if isinstance(suggestions, list) else [],
    }


def prayer_theme(text: str) -> str:
    lowered = text.lower()
    for theme, keywords in PRAYER_THEMES.items():
        if any(keyword in lowered for keyword in keywords):
            return theme
    return "general"


def parse_prayer(text: str) -> Dict[str, Any]:
    blocks = [block.strip() for block in re.split(r"\n\s*\n", strip_code_fence(text)) if block.strip()]
    if len(blocks) == 1:
        # Single-spaced numbered lists.
        lines = [line.strip() for line in blocks[0].splitlines() if line.strip()]
        if len(lines) > 1 and all(_NUMBERING_PATTERN.match(line) for line in lines):
            blocks = lines

    points: List[Dict[str, Any]] = []
    for block in blocks:
        cleaned = _NUMBERING_PATTERN.sub("", block, count=1).strip()
        if len(cleaned) <= MIN_PRAYER_POINT_LENGTH:
            continue
        points.append(
            {
                "order_number": len(points) + 1,
                "prayer_text": cleaned,
                "theme": prayer_theme(cleaned),
            }
        )
    if not points:
        raise ParseError("prayer_no_points")
    return {"points": points}


def parse_analysis(text: str) -> Dict[str, Any]:
    parsed = _load_json(text, category=CATEGORY_ANALYSIS)
    if not isinstance(parsed, dict):
        raise ParseError("analysis_response_not_object")
    return parsed


def parse_blog_post(text: str) -> Dict[str, Any]:
    stripped = strip_code_fence(text)
    lines = stripped.splitlines()
    title = ""
    body_start = 0
    for index, line in enumerate(lines):
        if line.strip():
            title = _TITLE_PREFIX_PATTERN.sub("", line).strip().strip("*").strip()
            body_start = index + 1
            break
    body = "\n".join(lines[body_start:]).strip()
    if not title:
        raise ParseError("blog_post_empty")
    if not body:
        raise ParseError("blog_post_missing_body", details={"title": title})
    return {"title": title, "body": body, "word_count": len(body.split())}


def parse_generic(text: str) -> Dict[str, Any]:
    stripped = strip_code_fence(text)
    if not stripped:
        raise ParseError("generic_response_empty")
    return {"text": stripped}


PARSERS: Dict[str, Callable[[str], Dict[str, Any]]] = {
    CATEGORY_SOCIAL_MEDIA: parse_social_media,
    CATEGORY_VIDEO_SCRIPT: parse_video_script,
    CATEGORY_PRAYER: parse_prayer,
    CATEGORY_ANALYSIS: parse_analysis,
    CATEGORY_BLOG_POST: parse_blog_post,
}


def parse_content(category: str, text: str) -> Dict[str, Any]:
    """Parse provider output for a category; raises ParseError on schema mismatch."""

    parser = PARSERS.get(canonicalize_category(category), parse_generic)
    return parser(text)
