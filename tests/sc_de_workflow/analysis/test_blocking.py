import numpy as np
import pandas as pd
import pytest

from sc_de_workflow.analysis.blocking import (
    block_weight,
    build_design_matrix,
    combine_stouffer,
    group_contrast,
    iter_blocks,
)
from sc_de_workflow.analysis.exceptions import DEConfigError, DesignMatrixError


def test_iter_blocks_without_block_covers_all_cells():
    blocks = list(iter_blocks(None, 5))

    assert len(blocks) == 1
    level, mask = blocks[0]
    assert level == "all"
    assert mask.all() and mask.size == 5


def test_iter_blocks_yields_one_mask_per_level():
    blocks = dict(iter_blocks(["p2", "p1", "p2"], 3))

    assert list(blocks) == ["p1", "p2"]
    assert blocks["p2"].tolist() == [True, False, True]


def test_iter_blocks_rejects_wrong_length():
    with pytest.raises(DEConfigError):
        list(iter_blocks(["p1", "p2"], 3))


def test_block_weight_favours_balanced_blocks():
    assert block_weight(1, 1) == pytest.approx(0.5)
    assert block_weight(10, 10) == pytest.approx(5.0)
    # same total, but unbalanced blocks carry less information
    assert block_weight(2, 18) < block_weight(10, 10)


def test_combine_stouffer_single_block_is_unchanged():
    p = np.array([[0.01, 0.5, 0.9]])
    np.testing.assert_allclose(combine_stouffer(p, [3.0]), p[0])


def test_combine_stouffer_agreeing_blocks_strengthen_evidence():
    p = np.array([[0.05, 0.5], [0.05, 0.5]])
    combined = combine_stouffer(p, [1.0, 1.0])

    assert combined[0] < 0.05
    assert combined[1] == pytest.approx(0.5)


def test_build_design_matrix_columns():
    groups = ["A", "A", "B", "B", "C", "C"]
    covariates = pd.DataFrame({"plate": ["p1", "p2", "p1", "p2", "p1", "p2"], "depth": [1.0, 5, 2, 3, 7, 4]})

    design = build_design_matrix(groups, covariates)

    assert list(design.columns) == ["group=A", "group=B", "group=C", "plate=p2", "depth"]
    assert design["group=B"].tolist() == [0, 0, 1, 1, 0, 0]
    assert design["plate=p2"].tolist() == [0, 1, 0, 1, 0, 1]


def test_build_design_matrix_confounded_group_raises():
    # B only occurs on p2, so the plate column duplicates group=B
    groups = ["A", "A", "B", "B"]
    covariates = pd.DataFrame({"plate": ["p1", "p1", "p2", "p2"]})

    with pytest.raises(DesignMatrixError):
        build_design_matrix(groups, covariates)


def test_group_contrast():
    design = build_design_matrix(["A", "B", "C"])

    np.testing.assert_array_equal(group_contrast(design, "C", "A"), [-1.0, 0.0, 1.0])

    with pytest.raises(DesignMatrixError):
        group_contrast(design, "A", "Z")
