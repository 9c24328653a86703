"""
Section anchors and cross-references between vignettes.

Anchors follow the usual Markdown renderer convention: lowercase, punctuation
stripped, whitespace turned into hyphens, duplicates suffixed with -1, -2, ...
A heading can also carry an explicit id: `## Blocking on the plate {#blocking}`.
Links point at the compiled Markdown files (`<id>.md`).
"""
from __future__ import annotations

import re
from typing import TYPE_CHECKING, Dict, Optional

from sc_de_workflow.reports.exceptions import CrossReferenceError

if TYPE_CHECKING:
    from sc_de_workflow.reports.compiler import VignetteSource

_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")
_EXPLICIT_ID_RE = re.compile(r"\s*\{#([\w-]+)\}\s*$")
_FENCE_RE = re.compile(r"^\s*(```|~~~)")


def slugify(heading: str) -> str:
    """Turn a heading into its anchor id."""
    text = heading.strip().lower()
    text = re.sub(r"[^\w\s-]", "", text)
    text = re.sub(r"\s+", "-", text)
    return text.strip("-")


def parse_sections(markdown: str) -> Dict[str, str]:
    """
    Collect the headings of a Markdown document.

    :return: {anchor: heading text} in document order
    """
    sections: Dict[str, str] = {}
    in_fence = False

    for line in markdown.splitlines():
        if _FENCE_RE.match(line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue

        m = _HEADING_RE.match(line)
        if not m:
            continue

        heading = m.group(2)
        explicit = _EXPLICIT_ID_RE.search(heading)
        if explicit:
            slug = explicit.group(1)
            heading = heading[: explicit.start()].strip()
        else:
            slug = slugify(heading)
            base, n = slug, 1
            while slug in sections:
                slug = f"{base}-{n}"
                n += 1

        sections[slug] = heading

    return sections


def make_link(
    target_vignette: "VignetteSource",
    section: Optional[str] = None,
    label: Optional[str] = None,
) -> str:
    """
    Markdown link to a vignette, optionally to one of its sections.

    `section` may be an anchor or the heading text itself.

    :raises CrossReferenceError: if the section does not exist in the target
    """
    if section is None:
        return f"[{label or target_vignette.title}]({target_vignette.id}.md)"

    slug = section if section in target_vignette.sections else slugify(section)
    if slug not in target_vignette.sections:
        raise CrossReferenceError(
            f"Vignette '{target_vignette.id}' has no section '{section}'"
        )

    text = label or target_vignette.sections[slug]
    return f"[{text}]({target_vignette.id}.md#{slug})"
