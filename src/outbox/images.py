"""Normalize image-generation responses.

Servers answer with several shapes: a bare list of URLs or base64
objects, or an object carrying ``data``, ``images``, a single ``url`` or
a single ``b64_json``/``b64``. Each strategy below handles one shape and
returns normalized ``{"type": "image", "url": ...}`` entries; they run in
a fixed priority order and their results are concatenated.
"""

from __future__ import annotations

from typing import Any, Callable

GeneratedFile = dict[str, str]


def _image(url: str) -> GeneratedFile:
    return {"type": "image", "url": url}


def _from_b64(b64: str) -> GeneratedFile:
    return _image(f"data:image/png;base64,{b64}")


def _from_item(item: Any) -> GeneratedFile | None:
    if isinstance(item, str):
        return _image(item) if item else None
    if isinstance(item, dict):
        url = item.get("url")
        b64 = item.get("b64_json") or item.get("b64")
        if isinstance(url, str) and url:
            return _image(url)
        if isinstance(b64, str) and b64:
            return _from_b64(b64)
    return None


def _from_items(items: Any) -> list[GeneratedFile]:
    if not isinstance(items, list):
        return []
    return [entry for entry in map(_from_item, items) if entry is not None]


def parse_top_level_list(resp: Any) -> list[GeneratedFile] | None:
    if not isinstance(resp, list):
        return None
    return _from_items(resp)


def parse_data_field(resp: Any) -> list[GeneratedFile] | None:
    if not isinstance(resp, dict):
        return None
    return _from_items(resp.get("data")) or None


def parse_images_field(resp: Any) -> list[GeneratedFile] | None:
    if not isinstance(resp, dict):
        return None
    return _from_items(resp.get("images")) or None


def parse_single_url(resp: Any) -> list[GeneratedFile] | None:
    if not isinstance(resp, dict):
        return None
    url = resp.get("url")
    if isinstance(url, str) and url:
        return [_image(url)]
    return None


def parse_single_b64(resp: Any) -> list[GeneratedFile] | None:
    if not isinstance(resp, dict):
        return None
    b64 = resp.get("b64_json") or resp.get("b64")
    if isinstance(b64, str) and b64:
        return [_from_b64(b64)]
    return None


ParseStrategy = Callable[[Any], "list[GeneratedFile] | None"]

STRATEGIES: tuple[ParseStrategy, ...] = (
    parse_top_level_list,
    parse_data_field,
    parse_images_field,
    parse_single_url,
    parse_single_b64,
)


def extract_generated_files(resp: Any) -> list[GeneratedFile]:
    """Run every strategy in priority order and collect what they find."""
    if isinstance(resp, list):
        # A bare list is the whole answer
        return parse_top_level_list(resp) or []
    results: list[GeneratedFile] = []
    for strategy in STRATEGIES:
        found = strategy(resp)
        if found:
            results.extend(found)
    return results
