import os
import textwrap
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from sc_de_workflow.reports.compiler import VignetteCompiler, read_vignette
from sc_de_workflow.reports.exceptions import CrossReferenceError, VignetteError
from sc_de_workflow.reports.model import FigureMetadata, WorkflowResults
from sc_de_workflow.views.plot_state import PlotState


def _write(vignette_dir: Path, name: str, text: str) -> Path:
    vignette_dir.mkdir(parents=True, exist_ok=True)
    path = vignette_dir / name
    path.write_text(textwrap.dedent(text).lstrip())
    return path


def _make_vignettes(vignette_dir: Path) -> None:
    _write(
        vignette_dir,
        "a_basics.md",
        """
        ---
        id: basics
        title: Basics
        ---
        ## Blocking {#blocking}
        Plates are blocking factors.
        """,
    )
    _write(
        vignette_dir,
        "b_advanced.md",
        """
        ---
        id: advanced
        title: Advanced
        depends: [basics]
        ---
        See {{ link("basics", "blocking") }}.
        """,
    )
    _write(
        vignette_dir,
        "c_extra.md",
        """
        ---
        id: extra
        title: Extra
        depends: advanced
        ---
        Back to {{ link("advanced", label="the advanced part") }}.
        """,
    )


def _bump_mtime(path: Path, seconds: float = 100.0) -> None:
    stat = path.stat()
    os.utime(path, (stat.st_atime + seconds, stat.st_mtime + seconds))


def test_read_vignette_front_matter(tmp_path):
    path = _write(
        tmp_path,
        "notes.md",
        """
        ---
        title: Notes
        depends: [a, b]
        ---
        # Heading
        """,
    )

    vignette = read_vignette(path)

    assert vignette.id == "notes"
    assert vignette.title == "Notes"
    assert vignette.depends == ("a", "b")
    assert vignette.sections == {"heading": "Heading"}


def test_read_vignette_bad_front_matter(tmp_path):
    path = _write(tmp_path, "broken.md", "---\ntitle: [unclosed\n---\nbody\n")

    with pytest.raises(VignetteError):
        read_vignette(path)


def test_order_follows_dependencies(tmp_path):
    _make_vignettes(tmp_path / "v")

    compiler = VignetteCompiler(tmp_path / "v", tmp_path / "out")

    assert compiler.order() == ["basics", "advanced", "extra"]


def test_dependency_cycle_raises(tmp_path):
    vdir = tmp_path / "v"
    _write(vdir, "x.md", "---\nid: x\ndepends: [y]\n---\n")
    _write(vdir, "y.md", "---\nid: y\ndepends: [x]\n---\n")

    with pytest.raises(VignetteError, match="cycle"):
        VignetteCompiler(vdir, tmp_path / "out").order()


def test_unknown_dependency_raises(tmp_path):
    vdir = tmp_path / "v"
    _write(vdir, "x.md", "---\nid: x\ndepends: [nowhere]\n---\n")

    with pytest.raises(VignetteError):
        VignetteCompiler(vdir, tmp_path / "out").order()


def test_duplicate_ids_raise(tmp_path):
    vdir = tmp_path / "v"
    _write(vdir, "x.md", "---\nid: same\n---\n")
    _write(vdir, "y.md", "---\nid: same\n---\n")

    with pytest.raises(VignetteError):
        VignetteCompiler(vdir, tmp_path / "out").discover()


def test_compile_writes_linked_markdown(tmp_path):
    _make_vignettes(tmp_path / "v")
    out = tmp_path / "out"

    compiled = VignetteCompiler(tmp_path / "v", out).compile()

    assert compiled == ["basics", "advanced", "extra"]
    assert (out / "basics.md").read_text().startswith("# Basics\n")
    assert "[Blocking](basics.md#blocking)" in (out / "advanced.md").read_text()
    assert "[the advanced part](advanced.md)" in (out / "extra.md").read_text()


def test_explicit_heading_ids_are_not_template_comments(tmp_path):
    vdir = tmp_path / "v"
    _write(vdir, "x.md", "---\nid: x\n---\n## Blocking {#blocking}\n{## dropped ##}\nkept\n")
    out = tmp_path / "out"

    VignetteCompiler(vdir, out).compile()

    text = (out / "x.md").read_text()
    assert "## Blocking {#blocking}" in text
    assert "dropped" not in text
    assert "kept" in text


def test_compile_skips_up_to_date_and_rebuilds_dependents(tmp_path):
    vdir = tmp_path / "v"
    _make_vignettes(vdir)
    out = tmp_path / "out"

    VignetteCompiler(vdir, out).compile()
    assert VignetteCompiler(vdir, out).compile() == []

    # a newer upstream source forces everything downstream to rebuild
    _bump_mtime(vdir / "b_advanced.md")
    assert VignetteCompiler(vdir, out).compile() == ["advanced", "extra"]

    assert VignetteCompiler(vdir, out).compile(force=True) == ["basics", "advanced", "extra"]


def test_link_to_unknown_section_raises(tmp_path):
    vdir = tmp_path / "v"
    _make_vignettes(vdir)
    _write(vdir, "d_bad.md", '---\nid: bad\n---\n{{ link("basics", "design") }}\n')

    with pytest.raises(CrossReferenceError):
        VignetteCompiler(vdir, tmp_path / "out").compile()


def test_link_to_unknown_vignette_raises(tmp_path):
    vdir = tmp_path / "v"
    _write(vdir, "x.md", '---\nid: x\n---\n{{ link("missing") }}\n')

    with pytest.raises(CrossReferenceError):
        VignetteCompiler(vdir, tmp_path / "out").compile()


def test_undefined_template_variable_raises(tmp_path):
    vdir = tmp_path / "v"
    _write(vdir, "x.md", "---\nid: x\n---\n{{ nothing_here }}\n")

    with pytest.raises(VignetteError):
        VignetteCompiler(vdir, tmp_path / "out").compile()


def _make_results(dataset) -> WorkflowResults:
    table = pd.DataFrame(
        {"logFC": [2.5, -1.25, 0.0], "PValue": [1e-6, 0.01, np.nan], "FDR": [3e-6, 0.015, np.nan]},
        index=pd.Index(["g1", "g2", "g3"], name="gene"),
    )
    results = WorkflowResults(dataset=dataset, tables={"pseudobulk.A": table}, groups=["A"])
    results.add_figure(
        FigureMetadata.from_state(
            figure_id="volcano-A",
            dataset_key=dataset.name,
            view_id="volcano",
            state=PlotState(table="pseudobulk.A"),
            label="Treated vs control in A",
        )
    )
    return results


def test_table_and_figure_helpers(tmp_path, marker_dataset):
    vdir = tmp_path / "v"
    _write(
        vdir,
        "r.md",
        """
        ---
        id: results
        title: Results
        ---
        {{ table("pseudobulk.A", 2, columns=["logFC", "FDR"]) }}

        {{ figure("volcano-A") }}
        """,
    )
    out = tmp_path / "out"

    VignetteCompiler(vdir, out, _make_results(marker_dataset)).compile()

    text = (out / "results.md").read_text()
    assert "| gene | logFC | FDR |" in text
    assert "| g1 | 2.5 | 3e-06 |" in text
    assert "g3" not in text
    assert '<iframe src="figures/Markers.volcano_volcano-A.html"' in text
    assert "*Treated vs control in A*" in text
    assert (out / "figures" / "Markers.volcano_volcano-A.html").is_file()


def test_table_unknown_name_raises(tmp_path, marker_dataset):
    vdir = tmp_path / "v"
    _write(vdir, "x.md", '---\nid: x\n---\n{{ table("nope") }}\n')

    with pytest.raises(CrossReferenceError):
        VignetteCompiler(vdir, tmp_path / "out", _make_results(marker_dataset)).compile()


def test_table_without_results_raises(tmp_path):
    vdir = tmp_path / "v"
    _write(vdir, "x.md", '---\nid: x\n---\n{{ table("pseudobulk.A") }}\n')

    with pytest.raises(CrossReferenceError):
        VignetteCompiler(vdir, tmp_path / "out").compile()


def test_changed_results_make_vignettes_stale(tmp_path, marker_dataset):
    vdir = tmp_path / "v"
    _write(vdir, "r.md", '---\nid: results\n---\n{{ table("pseudobulk.A", 1) }}\n')
    out = tmp_path / "out"

    assert VignetteCompiler(vdir, out, _make_results(marker_dataset)).compile() == ["results"]
    assert VignetteCompiler(vdir, out, _make_results(marker_dataset)).compile() == []

    changed = _make_results(marker_dataset)
    changed.tables["pseudobulk.A"].loc["g1", "logFC"] = 4.0

    assert VignetteCompiler(vdir, out, changed).compile() == ["results"]
    assert "| g1 | 4 |" in (out / "results.md").read_text()
