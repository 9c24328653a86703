from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal, Optional, cast

import anndata as ad
import pandas as pd
import scanpy as sc

from sc_de_workflow.analysis.de_model import DEConfig, DEResult
from sc_de_workflow.analysis.exceptions import DEConfigError, DERuntimeError
from sc_de_workflow.core.exceptions import DatasetSchemaError

logger = logging.getLogger(__name__)

METHODS = ("logreg", "t-test", "wilcoxon", "t-test_overestim_var")


def _validate_config(config: DEConfig) -> str:
    """Validate that groupby and group selections exist in the data; return the obs column."""
    if config.method not in METHODS:
        raise DEConfigError(f"method must be one of {METHODS}, got {config.method!r}")

    try:
        column = config.dataset.resolve_column(config.groupby)
    except DatasetSchemaError as e:
        raise DEConfigError(str(e)) from e

    groups = config.dataset.labels(config.groupby).unique()

    if str(config.group1) not in groups:
        raise DEConfigError(
            f"group1='{config.group1}' not present in obs['{column}']. "
            f"Available groups: {list(groups)}"
        )

    if config.group2 is not None and str(config.group2) not in groups:
        raise DEConfigError(
            f"group2='{config.group2}' not present in obs['{column}']. "
            f"Available groups: {list(groups)}"
        )

    return column


def _working_copy(config: DEConfig, column: str) -> ad.AnnData:
    """Log-expression AnnData restricted to the compared cells and (optionally) genes."""
    dataset = config.dataset
    logcounts = dataset.logcounts()
    labels = dataset.labels(config.groupby)

    work = ad.AnnData(
        X=logcounts.copy(),
        obs=pd.DataFrame({column: labels.to_numpy()}, index=dataset.adata.obs_names),
        var=pd.DataFrame(index=dataset.adata.var_names),
    )
    # log2(x + 1) values; scanpy needs the base for fold changes
    work.uns["log1p"] = {"base": 2}

    if config.genes:
        gene_mask = work.var_names.isin(config.genes)
        if gene_mask.any():
            work = work[:, gene_mask].copy()

    if config.group2 is not None:
        mask = work.obs[column].isin([str(config.group1), str(config.group2)])
        work = work[mask.to_numpy()].copy()

    work.obs[column] = work.obs[column].astype("category")
    return work


@lru_cache(maxsize=32)
def run_de(config: DEConfig) -> DEResult:
    """
    Run differential expression with scanpy.rank_genes_groups on log-expression.

    group2=None compares group1 against all other cells.
    """
    column = _validate_config(config)

    group1 = str(config.group1)
    group2: Optional[str] = str(config.group2) if config.group2 is not None else None
    method = cast(
        Literal["logreg", "t-test", "wilcoxon", "t-test_overestim_var"],
        config.method,
    )

    work = _working_copy(config, column)

    if group2 is None:
        comparison_label = f"{group1} v. rest"
        ref = "rest"
    else:
        comparison_label = f"{group1} v. {group2}"
        ref = group2

    logger.info(
        "Running rank_genes_groups",
        extra={"comparison": comparison_label, "method": method, "n_cells": work.n_obs},
    )

    try:
        sc.tl.rank_genes_groups(
            work,
            groupby=column,
            groups=[group1],
            reference=ref,
            method=method,
            use_raw=False,
            pts=True,
        )
        df = sc.get.rank_genes_groups_df(work, group=group1)
    except (ValueError, KeyError) as e:
        raise DERuntimeError(f"rank_genes_groups failed for {comparison_label}: {e}") from e

    df = df.rename(
        columns={
            "names": "gene",
            "logfoldchanges": "log2FC",
            "pvals": "pvalue",
            "pvals_adj": "adj_pvalue",
        }
    )

    if "log2FC" not in df.columns:
        # logreg reports scores only
        df["log2FC"] = float("nan")
        df["pvalue"] = float("nan")
        df["adj_pvalue"] = float("nan")

    required = ["gene", "log2FC", "pvalue", "adj_pvalue"]
    df["comparison"] = comparison_label

    table = cast(pd.DataFrame, df[required + ["comparison"]])
    return DEResult(config=config, table=table)
