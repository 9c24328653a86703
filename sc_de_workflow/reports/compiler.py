"""
Compile Markdown vignettes into linked documents.

A vignette is a Markdown file with YAML front matter:

    ---
    id: multi-sample
    title: Multi-sample comparisons
    depends: [de]
    ---

The body is a jinja2 template with three helpers:

- `link(vignette_id, section=None, label=None)` - cross-reference
- `table(name, n=10, columns=None)` - Markdown table from a workflow result
- `figure(figure_id)` - export a workflow figure to HTML and embed it

Headings may carry explicit ids (`## Blocking {#blocking}`), so template
comments use `{## ... ##}` instead of jinja2's default `{# ... #}`.

Vignettes compile in dependency order; an output is rebuilt when it is missing,
older than its source, built from different workflow results, or one of its
dependencies was rebuilt in the same run.
"""
from __future__ import annotations

import graphlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import jinja2
import numpy as np
import yaml

from sc_de_workflow.reports.exceptions import CrossReferenceError, VignetteError
from sc_de_workflow.reports.export_service import ExportService
from sc_de_workflow.reports.links import make_link, parse_sections
from sc_de_workflow.reports.model import WorkflowResults
from sc_de_workflow.views import default_registry

logger = logging.getLogger(__name__)

FRONT_MATTER_DELIMITER = "---"
BUILD_MANIFEST = ".vignette-inputs.json"

_TABLE_TEMPLATE = """\
| {{ index_name }} |{% for c in columns %} {{ c }} |{% endfor %}
|---|{% for c in columns %}---|{% endfor %}
{% for idx, row in rows %}| {{ idx }} |{% for v in row %} {{ v | fmt }} |{% endfor %}
{% endfor %}"""

_FIGURE_TEMPLATE = """\
<iframe src="figures/{{ file_name }}" width="100%" height="{{ height }}" frameborder="0"></iframe>
{% if label %}
*{{ label }}*
{% endif %}"""


def _fmt(value) -> str:
    if isinstance(value, (float, np.floating)):
        if np.isnan(value):
            return "NA"
        return f"{value:.3g}"
    return str(value)


@dataclass
class VignetteSource:
    id: str
    title: str
    path: Path
    body: str
    depends: Tuple[str, ...] = ()
    sections: Dict[str, str] = field(default_factory=dict)


def read_vignette(path: Path) -> VignetteSource:
    """
    Parse a vignette file (YAML front matter + Markdown body).

    `id` defaults to the file stem and `title` to the id.
    """
    text = Path(path).read_text(encoding="utf-8")
    meta = {}
    body = text

    lines = text.splitlines(keepends=True)
    if lines and lines[0].strip() == FRONT_MATTER_DELIMITER:
        try:
            end = next(
                i for i, line in enumerate(lines[1:], start=1)
                if line.strip() == FRONT_MATTER_DELIMITER
            )
        except StopIteration:
            raise VignetteError(f"Unterminated front matter in {path}")

        try:
            meta = yaml.safe_load("".join(lines[1:end])) or {}
        except yaml.YAMLError as e:
            raise VignetteError(f"Invalid front matter in {path}: {e}") from e
        if not isinstance(meta, dict):
            raise VignetteError(f"Front matter in {path} must be a mapping")
        body = "".join(lines[end + 1:])

    depends = meta.get("depends") or []
    if isinstance(depends, str):
        depends = [depends]

    vid = str(meta.get("id", Path(path).stem))
    return VignetteSource(
        id=vid,
        title=str(meta.get("title", vid)),
        path=Path(path),
        body=body,
        depends=tuple(str(d) for d in depends),
        sections=parse_sections(body),
    )


class VignetteCompiler:
    """
    Discover, order and render the vignettes of a directory.

    Rendered Markdown goes to <output_dir>/<id>.md, figures to
    <output_dir>/figures/<stem>.html.
    """

    def __init__(
        self,
        vignette_dir: Path,
        output_dir: Path,
        results: Optional[WorkflowResults] = None,
        export_service: Optional[ExportService] = None,
    ):
        self.vignette_dir = Path(vignette_dir)
        self.output_dir = Path(output_dir)
        self.results = results

        if export_service is None and results is not None:
            export_service = ExportService(
                datasets_by_key={results.dataset_key: results.dataset},
                view_registry=default_registry(),
                output_root=self.output_dir / "figures",
                tables=results.tables,
            )
        self._export_service = export_service

        self._env = jinja2.Environment(
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            undefined=jinja2.StrictUndefined,
            keep_trailing_newline=True,
            comment_start_string="{##",
            comment_end_string="##}",
        )
        # snippets keep their line structure, so no block trimming here
        self._snippet_env = jinja2.Environment(autoescape=False, undefined=jinja2.StrictUndefined)
        self._snippet_env.filters["fmt"] = _fmt

        self._vignettes: Optional[Dict[str, VignetteSource]] = None
        self._inputs: Optional[str] = None

    # ------------------------------------------------------------------
    # Discovery / ordering
    # ------------------------------------------------------------------
    def discover(self) -> Dict[str, VignetteSource]:
        """Read every *.md file in vignette_dir, keyed by vignette id."""
        if not self.vignette_dir.is_dir():
            raise VignetteError(f"Vignette directory not found: {self.vignette_dir}")

        vignettes: Dict[str, VignetteSource] = {}
        for path in sorted(self.vignette_dir.glob("*.md")):
            vignette = read_vignette(path)
            if vignette.id in vignettes:
                raise VignetteError(
                    f"Duplicate vignette id '{vignette.id}' in {path} and {vignettes[vignette.id].path}"
                )
            vignettes[vignette.id] = vignette

        logger.info(
            "Discovered vignettes",
            extra={"dir": str(self.vignette_dir), "vignettes": list(vignettes)},
        )
        self._vignettes = vignettes
        return vignettes

    @property
    def vignettes(self) -> Dict[str, VignetteSource]:
        if self._vignettes is None:
            self.discover()
        return self._vignettes

    def order(self) -> List[str]:
        """
        Vignette ids in dependency order (ties broken alphabetically).

        :raises VignetteError: on unknown dependencies or cycles
        """
        vignettes = self.vignettes
        sorter = graphlib.TopologicalSorter()
        for vid in sorted(vignettes):
            for dep in vignettes[vid].depends:
                if dep not in vignettes:
                    raise VignetteError(f"Vignette '{vid}' depends on unknown vignette '{dep}'")
            sorter.add(vid, *vignettes[vid].depends)

        try:
            sorter.prepare()
        except graphlib.CycleError as e:
            raise VignetteError(f"Vignette dependency cycle: {' -> '.join(e.args[1])}") from e

        ordered: List[str] = []
        while sorter.is_active():
            ready = sorted(sorter.get_ready())
            ordered.extend(ready)
            sorter.done(*ready)
        return ordered

    # ------------------------------------------------------------------
    # Template helpers
    # ------------------------------------------------------------------
    def _link(self, vignette_id: str, section: Optional[str] = None, label: Optional[str] = None) -> str:
        try:
            target = self.vignettes[vignette_id]
        except KeyError:
            raise CrossReferenceError(f"Unknown vignette '{vignette_id}'")
        return make_link(target, section=section, label=label)

    def _require_results(self, what: str) -> WorkflowResults:
        if self.results is None:
            raise CrossReferenceError(f"No workflow results available for {what}")
        return self.results

    def _table(self, name: str, n: int = 10, columns: Optional[Sequence[str]] = None) -> str:
        results = self._require_results(f"table '{name}'")
        try:
            df = results.tables[name]
        except KeyError:
            raise CrossReferenceError(f"Unknown table '{name}'")

        if columns is not None:
            missing = [c for c in columns if c not in df.columns]
            if missing:
                raise CrossReferenceError(f"Table '{name}' has no column(s) {missing}")
            df = df[list(columns)]

        head = df.head(n)
        template = self._snippet_env.from_string(_TABLE_TEMPLATE)
        return template.render(
            index_name=head.index.name or "",
            columns=[str(c) for c in head.columns],
            rows=[(idx, list(row)) for idx, row in zip(head.index, head.itertuples(index=False))],
        )

    def _figure(self, figure_id: str, height: int = 600) -> str:
        results = self._require_results(f"figure '{figure_id}'")
        metadata = results.get_figure(figure_id)
        if metadata is None:
            raise CrossReferenceError(f"Unknown figure '{figure_id}'")

        path = self._export_service.export_single(metadata)
        template = self._snippet_env.from_string(_FIGURE_TEMPLATE)
        return template.render(file_name=path.name, height=height, label=metadata.label)

    # ------------------------------------------------------------------
    # Compilation
    # ------------------------------------------------------------------
    def output_path(self, vignette_id: str) -> Path:
        return self.output_dir / f"{vignette_id}.md"

    @property
    def manifest_path(self) -> Path:
        return self.output_dir / BUILD_MANIFEST

    def inputs_fingerprint(self) -> Optional[str]:
        """Fingerprint of the workflow results the vignettes are rendered from."""
        if self.results is None:
            return None
        if self._inputs is None:
            self._inputs = self.results.fingerprint()
        return self._inputs

    def read_manifest(self) -> Dict[str, Optional[str]]:
        """Vignette id -> results fingerprint recorded at its last build."""
        if not self.manifest_path.exists():
            return {}
        try:
            return json.loads(self.manifest_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.warning(
                "Unreadable build manifest; rebuilding all vignettes",
                extra={"path": str(self.manifest_path), "error": str(e)},
            )
            return {}

    def is_stale(self, vignette: VignetteSource, manifest: Optional[Dict[str, Optional[str]]] = None) -> bool:
        out = self.output_path(vignette.id)
        if not out.exists():
            return True
        if vignette.path.stat().st_mtime > out.stat().st_mtime:
            return True

        manifest = self.read_manifest() if manifest is None else manifest
        return manifest.get(vignette.id) != self.inputs_fingerprint()

    def render(self, vignette: VignetteSource) -> str:
        try:
            template = self._env.from_string(vignette.body)
            body = template.render(
                link=self._link,
                table=self._table,
                figure=self._figure,
                vignette=vignette,
                dataset=self.results.dataset_key if self.results is not None else None,
                groups=list(self.results.groups) if self.results is not None else [],
                tables=sorted(self.results.tables) if self.results is not None else [],
            )
        except jinja2.TemplateError as e:
            raise VignetteError(f"Failed to render vignette '{vignette.id}': {e}") from e

        return f"# {vignette.title}\n\n{body}"

    def compile(self, force: bool = False) -> List[str]:
        """
        Render stale vignettes in dependency order.

        :param force: rebuild everything regardless of timestamps
        :return: ids of the vignettes that were (re)built
        """
        self.discover()
        self.output_dir.mkdir(parents=True, exist_ok=True)

        manifest = self.read_manifest()
        compiled: List[str] = []
        for vid in self.order():
            vignette = self.vignettes[vid]
            rebuilt_deps = [d for d in vignette.depends if d in compiled]

            if not (force or rebuilt_deps or self.is_stale(vignette, manifest)):
                logger.debug("Vignette up to date", extra={"vignette": vid})
                continue

            text = self.render(vignette)
            self.output_path(vid).write_text(text, encoding="utf-8")
            compiled.append(vid)
            manifest[vid] = self.inputs_fingerprint()

            logger.info(
                "Compiled vignette",
                extra={
                    "vignette": vid,
                    "output": str(self.output_path(vid)),
                    "forced": force,
                    "rebuilt_dependencies": rebuilt_deps,
                },
            )

        if compiled:
            self.manifest_path.write_text(json.dumps(manifest, indent=2, sort_keys=True), encoding="utf-8")
        return compiled
