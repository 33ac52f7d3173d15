import json

import numpy as np
import pandas as pd
import pytest

from gexkit.containers import ExpressionSet
from gexkit.wgcna import (
    adjacency,
    merge_close_modules,
    module_color_names,
    topological_overlap,
    wrap_wgcna,
)

N_SAMPLES = 20


@pytest.fixture
def factors(rng):
    return rng.normal(size=(3, N_SAMPLES))


@pytest.fixture
def module_expression(rng, factors):
    blocks = []
    for factor in factors:
        blocks.append(factor + rng.normal(scale=0.3, size=(40, N_SAMPLES)))
    blocks.append(rng.normal(size=(40, N_SAMPLES)))
    values = np.vstack(blocks) + 8
    genes = [f"m{m}_{i}" for m in range(3) for i in range(40)] + [f"noise_{i}" for i in range(40)]
    samples = [f"S{i}" for i in range(1, N_SAMPLES + 1)]
    return pd.DataFrame(values, index=genes, columns=samples)


def test_topological_overlap_properties(module_expression):
    cor = np.corrcoef(module_expression.to_numpy())
    tom = topological_overlap(adjacency(cor, 6))
    assert np.allclose(tom, tom.T)
    assert np.allclose(np.diag(tom), 1.0)
    assert tom.min() >= 0 and tom.max() <= 1 + 1e-12
    # Within-module overlap exceeds overlap with noise genes.
    assert tom[0, 1:40].mean() > tom[0, 120:].mean()


def test_adjacency_rejects_unknown_network_type():
    with pytest.raises(ValueError, match="network_type"):
        adjacency(np.eye(2), 6, "hybrid")


def test_module_color_names_cycle():
    names = module_color_names(36)
    assert names[:2] == ["turquoise", "blue"]
    assert names[34] == "turquoise2"


def test_merge_close_modules_joins_same_factor(rng, factors):
    values = np.vstack([
        factors[0] + rng.normal(scale=0.3, size=(25, N_SAMPLES)),
        factors[0] + rng.normal(scale=0.3, size=(15, N_SAMPLES)),
        factors[1] + rng.normal(scale=0.3, size=(20, N_SAMPLES)),
    ])
    genes = [f"g{i}" for i in range(60)]
    expr = pd.DataFrame(values, index=genes)
    modules = pd.Series(["turquoise"] * 25 + ["blue"] * 15 + ["brown"] * 20, index=genes)

    merged = merge_close_modules(expr, modules, merge_cut_height=0.25)
    assert merged.value_counts().to_dict() == {"turquoise": 40, "brown": 20}


def test_wrap_wgcna_finds_modules_and_trait(tmp_path, module_expression, factors, rng):
    traits = pd.DataFrame(
        {
            "score": factors[0] + rng.normal(scale=0.1, size=N_SAMPLES),
            "sex": ["f", "m"] * (N_SAMPLES // 2),
        },
        index=module_expression.columns,
    )
    res = wrap_wgcna(
        module_expression, traits=traits, soft_power=6, cut_height=0.9,
        min_module_size=10, projectfolder=tmp_path, projectname="net",
    )

    modules = res["modules"]
    colors = []
    for m in range(3):
        block = modules[[f"m{m}_{i}" for i in range(40)]]
        assert block.value_counts().iloc[0] >= 36
        colors.append(block.mode().iloc[0])
    assert len(set(colors)) == 3
    assert "grey" not in colors
    assert (modules[[f"noise_{i}" for i in range(40)]] == "grey").mean() > 0.8

    assert res["power"] == 6
    assert len(res["soft_threshold"]) == 20
    cor = res["module_trait_cor"]
    assert cor.loc[f"ME{colors[0]}", "score"] > 0.8
    assert {"sex_f", "sex_m"} <= set(cor.columns)
    assert res["module_trait_p"].loc[f"ME{colors[0]}", "score"] < 1e-4
    assert list(res["gene_info"].columns) == ["gene", "module", "kME"]
    assert res["gene_info"].set_index("gene").loc["m0_0", "kME"] > 0.8

    for name in ("sample_clustering.png", "soft_threshold.txt", "soft_threshold.png",
                 "gene_dendrogram_modules.png", "module_trait_relationships.png",
                 "module_eigengenes.txt", "module_trait_correlation.txt",
                 "module_trait_pvalue.txt", "gene_modules.txt"):
        assert (tmp_path / f"net_{name}").exists(), name
    record = json.loads((tmp_path / "net_run_info_wgcna.json").read_text())
    assert record["results_summary"]["power"] == 6


def test_wrap_wgcna_uses_pheno_data_of_expression_set(tmp_path, module_expression, factors):
    pheno = pd.DataFrame(
        {"sample": module_expression.columns, "score": factors[1]},
        index=module_expression.columns,
    )
    eset = ExpressionSet(module_expression, pheno)
    res = wrap_wgcna(eset, soft_power=6, cut_height=0.9, min_module_size=10,
                     projectfolder=tmp_path)
    # The identifier column is not a trait.
    assert list(res["module_trait_cor"].columns) == ["score"]


def test_wrap_wgcna_needs_samples(tmp_path):
    expr = pd.DataFrame(np.arange(8.0).reshape(4, 2))
    with pytest.raises(ValueError, match="At least 3 samples"):
        wrap_wgcna(expr, projectfolder=tmp_path)
