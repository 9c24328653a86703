from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class PlotState:
    """
    Describes what a view should draw.

    Fields:

    - table: name of a workflow table (DE result or marker list) the view reads
    - genes: genes to plot; views fall back to the top of `table` when empty
    - groupby / split_by: semantic keys or obs columns used for grouping/colouring
    - n_genes: how many genes to take from a table when `genes` is empty
    - pval_threshold / lfc_threshold: significance cut-offs for volcano plots
    - color_scale: name of the continuous colour scale
    """

    table: Optional[str] = None
    genes: List[str] = field(default_factory=list)
    groupby: str = "cluster"
    split_by: Optional[str] = None
    n_genes: int = 20
    pval_threshold: float = 0.05
    lfc_threshold: float = 1.0
    color_scale: str = "RdBu_r"
    title: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PlotState:
        return cls(
            table=data.get("table"),
            genes=list(data.get("genes", [])),
            groupby=data.get("groupby", "cluster"),
            split_by=data.get("split_by"),
            n_genes=int(data.get("n_genes", 20)),
            pval_threshold=float(data.get("pval_threshold", 0.05)),
            lfc_threshold=float(data.get("lfc_threshold", 1.0)),
            color_scale=data.get("color_scale", "RdBu_r"),
            title=data.get("title"),
        )
