import numpy as np
import pytest

from sc_de_workflow.analysis.exceptions import DEConfigError
from sc_de_workflow.analysis.pairwise_wilcox import pairwise_wilcox


def _make_random_data(seed: int = 0):
    rng = np.random.default_rng(seed)
    x = rng.normal(size=(60, 5))
    x[:20, 0] += 3.0  # gene_0 higher in A
    groups = np.repeat(["A", "B", "C"], 20)
    plates = np.tile(["p1", "p2"], 30)
    return x, groups, plates


def test_auc_is_bounded_and_complementary():
    x, groups, plates = _make_random_data()

    result = pairwise_wilcox(x, groups, block=plates)

    for first, second in result.statistics:
        auc = result.get(first, second)["AUC"]
        assert ((auc >= 0) & (auc <= 1)).all()
        np.testing.assert_allclose(auc + result.get(second, first)["AUC"], 1.0)


def test_perfect_separation_gives_auc_one():
    x = np.array([[5.0], [6.0], [7.0], [1.0], [2.0], [3.0]])
    groups = ["A", "A", "A", "B", "B", "B"]

    result = pairwise_wilcox(x, groups)

    assert result.get("A", "B")["AUC"].iloc[0] == pytest.approx(1.0)
    assert result.get("B", "A")["AUC"].iloc[0] == pytest.approx(0.0)


def test_ties_count_one_half():
    x = np.ones((4, 1))
    groups = ["A", "A", "B", "B"]

    result = pairwise_wilcox(x, groups)

    assert result.get("A", "B")["AUC"].iloc[0] == pytest.approx(0.5)


def test_shifted_gene_detected_in_right_direction():
    x, groups, plates = _make_random_data()

    ab = pairwise_wilcox(x, groups, block=plates, gene_names=[f"g{j}" for j in range(5)]).get("A", "B")

    assert ab.loc["g0", "AUC"] > 0.9
    assert ab.loc["g0", "p_up"] < 1e-4
    assert ab.loc["g0", "p_down"] > 0.9


def test_pairs_without_shared_block_are_nan():
    x = np.arange(8, dtype=float).reshape(4, 2)
    groups = ["A", "A", "B", "B"]
    plates = ["p1", "p1", "p2", "p2"]

    result = pairwise_wilcox(x, groups, block=plates)

    assert result.get("A", "B")["AUC"].isna().all()
    assert result.get("B", "A")["p_value"].isna().all()


def test_negative_lfc_rejected():
    x, groups, _ = _make_random_data()

    with pytest.raises(DEConfigError):
        pairwise_wilcox(x, groups, lfc=-0.5)
