"""Helpers for entity names, denormalized paths and tags."""

import re
from collections.abc import Iterable

ROOT_PATH = "/"
MAX_NAME_LENGTH = 255

_ILLEGAL_CHARS = re.compile(r'[<>:"/\\|?*]')
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_WHITESPACE = re.compile(r"\s+")


def sanitize_name(name: str) -> str:
    """Replace characters that are illegal in a path segment.

    The result may be empty; callers reject empty names.
    """
    cleaned = _CONTROL_CHARS.sub("", name)
    cleaned = _ILLEGAL_CHARS.sub("_", cleaned)
    cleaned = cleaned.replace("..", "_")
    return _WHITESPACE.sub(" ", cleaned).strip()


def name_key(name: str) -> str:
    """Key used for case-insensitive sibling name comparison."""
    return name.casefold()


def split_extension(name: str) -> tuple[str, str]:
    """Split a name into stem and lower-case extension (without the dot).

    A leading dot (".profile") is part of the stem, not an extension.
    """
    idx = name.rfind(".")
    if idx <= 0 or idx == len(name) - 1:
        return name, ""
    return name[:idx], name[idx + 1 :].lower()


def child_path(parent_path: str, parent_name: str) -> str:
    """Return the path of an entity living directly inside `parent_name`."""
    parts = [p for p in parent_path.split("/") if p]
    parts.append(parent_name)
    return ROOT_PATH + "/".join(parts)


def path_from_names(names: Iterable[str]) -> str:
    """Join ancestor names (root first) into a path."""
    return ROOT_PATH + "/".join(names)


def normalize_tags(tags: Iterable[str]) -> list[str]:
    """Trim, drop empty values and de-duplicate tags keeping first-seen order."""
    seen: dict[str, None] = {}
    for tag in tags:
        if not isinstance(tag, str):
            continue
        if clean := tag.strip():
            seen.setdefault(clean, None)
    return list(seen)
