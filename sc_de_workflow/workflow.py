"""
The DE workflow for one dataset.

Runs the analysis steps in order and collects named tables plus figure
descriptions into a WorkflowResults bundle:

1. marker detection with t-tests blocked on the plate
2. the same comparison through a linear model with the plate as covariate
3. Wilcoxon rank sum markers (AUC effect sizes), blocked on the plate
4. markers that must be DE against *all* other groups
5. scanpy rank_genes_groups one-vs-rest
6. pseudo-bulk aggregation per (group, sample, condition)
7. quasi-likelihood NB GLM test of the condition within each group
"""
from __future__ import annotations

import logging
from typing import Dict, Optional

import pandas as pd

from sc_de_workflow.analysis import (
    DEConfig,
    DEConfigError,
    DERuntimeError,
    MarkerResult,
    aggregate_across_cells,
    combine_markers,
    find_markers,
    pseudobulk_de,
    run_de,
)
from sc_de_workflow.config.model import WorkflowConfig
from sc_de_workflow.core.dataset import Dataset
from sc_de_workflow.core.exceptions import DatasetSchemaError
from sc_de_workflow.reports.model import FigureMetadata, WorkflowResults
from sc_de_workflow.views.plot_state import PlotState

logger = logging.getLogger(__name__)


class DEWorkflow:

    def __init__(self, dataset: Dataset, config: Optional[WorkflowConfig] = None):
        self.dataset = dataset
        self.config = config or WorkflowConfig()
        self.results = WorkflowResults(dataset=dataset)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _optional_column(self, key: Optional[str]) -> Optional[str]:
        """Resolve a semantic key, returning None (with a warning) when the dataset lacks it."""
        if key is None:
            return None
        try:
            return self.dataset.resolve_column(key)
        except DatasetSchemaError:
            logger.warning(
                "Column not available; dependent steps are skipped or run unblocked",
                extra={"dataset": self.dataset.name, "key": key},
            )
            return None

    def _log_step(self, step: int, name: str, **params) -> None:
        logger.info(
            "Workflow step",
            extra={"dataset": self.dataset.name, "step": step, "step_name": name, **params},
        )

    def _add_markers(self, prefix: str, markers: Dict[str, pd.DataFrame]) -> None:
        for group, table in markers.items():
            self.results.add_table(f"{prefix}.{group}", table)

    def _add_figure(self, figure_id: str, view_id: str, state: PlotState, label: str) -> None:
        self.results.add_figure(
            FigureMetadata.from_state(
                figure_id=figure_id,
                dataset_key=self.dataset.name,
                view_id=view_id,
                state=state,
                label=label,
            )
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------
    def blocked_t_markers(self, block: Optional[str]) -> MarkerResult:
        cfg = self.config
        self._log_step(1, "t-test markers", block=block, pval_type=cfg.pval_type, lfc=cfg.lfc)
        result = find_markers(
            self.dataset,
            groupby=cfg.groupby,
            test="t",
            block=block,
            pval_type=cfg.pval_type,
            direction=cfg.direction,
            lfc=cfg.lfc,
        )
        self._add_markers("markers_t_blocked", result.markers)

        for group in result.markers:
            self._add_figure(
                f"heatmap-t-blocked-{group}",
                "marker_heatmap",
                PlotState(
                    table=f"markers_t_blocked.{group}",
                    n_genes=cfg.top_n,
                    title=f"log-fold changes of the top markers for {group}",
                ),
                label=f"Top {cfg.top_n} markers of {group} (t-test, blocked on {block or 'nothing'})",
            )
            top = result.top_genes(group, 1)
            if top:
                self._add_figure(
                    f"expression-{group}",
                    "expression",
                    PlotState(genes=top, groupby=cfg.groupby, split_by=block),
                    label=f"Expression of {top[0]}, the top marker of {group}",
                )
        return result

    def design_t_markers(self, block: str) -> MarkerResult:
        cfg = self.config
        self._log_step(2, "t-test markers with design matrix", design=[block])
        result = find_markers(
            self.dataset,
            groupby=cfg.groupby,
            test="t",
            design=[block],
            pval_type=cfg.pval_type,
            direction=cfg.direction,
            lfc=cfg.lfc,
        )
        self._add_markers("markers_t_design", result.markers)
        return result

    def blocked_wilcox_markers(self, block: Optional[str]) -> MarkerResult:
        cfg = self.config
        self._log_step(3, "Wilcoxon markers", block=block, pval_type=cfg.pval_type)
        result = find_markers(
            self.dataset,
            groupby=cfg.groupby,
            test="wilcox",
            block=block,
            pval_type=cfg.pval_type,
            direction=cfg.direction,
            lfc=cfg.lfc,
        )
        self._add_markers("markers_wilcox_blocked", result.markers)

        for group in result.markers:
            self._add_figure(
                f"heatmap-wilcox-blocked-{group}",
                "marker_heatmap",
                PlotState(table=f"markers_wilcox_blocked.{group}", n_genes=cfg.top_n, color_scale="Viridis"),
                label=f"AUCs of the top markers of {group}",
            )
        return result

    def all_markers(self, t_result: MarkerResult) -> None:
        self._log_step(4, "markers DE against all other groups", pval_type="all")
        markers = combine_markers(t_result.pairwise, pval_type="all", direction=self.config.direction)
        self._add_markers("markers_t_all", markers)

    def scanpy_one_vs_rest(self) -> None:
        cfg = self.config
        self._log_step(5, "scanpy one-vs-rest", method="t-test")
        for group in sorted(self.dataset.labels(cfg.groupby).unique()):
            try:
                result = run_de(DEConfig(dataset=self.dataset, groupby=cfg.groupby, group1=group, method="t-test"))
            except DERuntimeError as e:
                logger.warning(
                    "scanpy comparison failed; skipping group",
                    extra={"group": group, "error": str(e)},
                )
                continue

            self.results.add_table(f"scanpy.{group}", result.table)
            self._add_figure(
                f"volcano-scanpy-{group}",
                "volcano",
                PlotState(table=f"scanpy.{group}", title=f"{group} v. rest"),
                label=f"Cluster {group} against all other cells (scanpy t-test)",
            )

    def pseudobulk(self, condition: str, sample: Optional[str], block: Optional[str]) -> None:
        cfg = self.config
        group_col = self.dataset.resolve_column(cfg.groupby)
        # block stays in the pseudo-bulk obs so the GLM can use it as a covariate
        by = [c for c in (group_col, sample, block, condition) if c is not None]
        by = list(dict.fromkeys(by))
        layer = self.dataset.counts_layer or cfg.counts_layer

        self._log_step(6, "pseudo-bulk aggregation", by=by, layer=layer)
        pb = aggregate_across_cells(self.dataset.adata, by=by, layer=layer)
        self.results.add_table("pseudobulk_samples", pb.obs.reset_index(drop=True))

        covariates = [block] if block is not None and block not in (group_col, condition) else []
        self._log_step(
            7,
            "pseudo-bulk QL GLM",
            condition=condition,
            contrast=list(cfg.contrast) if cfg.contrast else None,
            covariates=covariates,
            min_cells=cfg.min_cells,
            min_cpm=cfg.min_cpm,
        )
        tables = pseudobulk_de(
            pb,
            label=group_col,
            condition=condition,
            contrast=cfg.contrast,
            covariates=covariates,
            min_cells=cfg.min_cells,
            min_cpm=cfg.min_cpm,
            dispersion=cfg.dispersion,
        )

        for label, table in tables.items():
            self.results.add_table(f"pseudobulk.{label}", table)
            self._add_figure(
                f"volcano-pseudobulk-{label}",
                "volcano",
                PlotState(table=f"pseudobulk.{label}", title=f"{condition} in {label}"),
                label=f"Effect of {condition} within {cfg.groupby} {label} (pseudo-bulk QL GLM)",
            )

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------
    def run(self) -> WorkflowResults:
        cfg = self.config
        ds = self.dataset

        try:
            ds.resolve_column(cfg.groupby)
        except DatasetSchemaError as e:
            raise DEConfigError(f"groupby '{cfg.groupby}' is not usable: {e}") from e

        if ds.logcounts_layer != cfg.logcounts_layer:
            ds.logcounts_layer = cfg.logcounts_layer
            ds.clear_caches()
        ds.ensure_logcounts()

        block = self._optional_column(cfg.block)
        condition = self._optional_column(cfg.condition)
        sample = self._optional_column(cfg.sample)

        logger.info(
            "Starting DE workflow",
            extra={
                "dataset": ds.name,
                "groupby": cfg.groupby,
                "block": block,
                "condition": condition,
                "sample": sample,
            },
        )

        t_result = self.blocked_t_markers(block)
        if block is not None:
            self.design_t_markers(block)
        self.blocked_wilcox_markers(block)
        self.all_markers(t_result)
        self.scanpy_one_vs_rest()

        if condition is not None:
            self.pseudobulk(condition, sample, block)
        else:
            logger.warning("No condition column; skipping pseudo-bulk steps", extra={"dataset": ds.name})

        self.results.groups = list(t_result.markers)
        logger.info(
            "DE workflow complete",
            extra={
                "dataset": ds.name,
                "n_tables": len(self.results.tables),
                "n_figures": len(self.results.figures),
            },
        )
        return self.results

