from pathlib import Path

import pytest

from sc_de_workflow.reports.compiler import VignetteSource
from sc_de_workflow.reports.exceptions import CrossReferenceError
from sc_de_workflow.reports.links import make_link, parse_sections, slugify


@pytest.mark.parametrize(
    "heading, slug",
    [
        ("Blocking on the plate", "blocking-on-the-plate"),
        ("What about `pval_type`?", "what-about-pval_type"),
        ("  Pseudo-bulk:  DE  ", "pseudo-bulk-de"),
        ("AUC (Wilcoxon)", "auc-wilcoxon"),
    ],
)
def test_slugify(heading, slug):
    assert slugify(heading) == slug


def test_parse_sections_in_document_order():
    markdown = "\n".join(
        [
            "# Overview",
            "text",
            "## Blocking on the plate {#blocking}",
            "```python",
            "# not a heading",
            "```",
            "## Results",
            "### Results",
        ]
    )

    sections = parse_sections(markdown)

    assert list(sections.items()) == [
        ("overview", "Overview"),
        ("blocking", "Blocking on the plate"),
        ("results", "Results"),
        ("results-1", "Results"),
    ]


def _make_vignette() -> VignetteSource:
    return VignetteSource(
        id="de",
        title="Detecting markers",
        path=Path("de.md"),
        body="",
        sections={"blocking": "Blocking on the plate", "wilcoxon-tests": "Wilcoxon tests"},
    )


def test_make_link_to_vignette():
    assert make_link(_make_vignette()) == "[Detecting markers](de.md)"


def test_make_link_to_section_by_anchor_or_heading():
    vignette = _make_vignette()

    assert make_link(vignette, "blocking") == "[Blocking on the plate](de.md#blocking)"
    assert make_link(vignette, "Wilcoxon tests", label="here") == "[here](de.md#wilcoxon-tests)"


def test_make_link_unknown_section_raises():
    with pytest.raises(CrossReferenceError):
        make_link(_make_vignette(), "design")
