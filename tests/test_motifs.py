import json

import numpy as np
import pytest

from gexkit.motifs import (
    best_relative_scores,
    build_pwm,
    read_jaspar,
    shuffle_sequences,
    wrap_pwm_enrich,
)

# GATA-like site.
GATA_COUNTS = np.array([
    [0, 20, 0, 20],   # A
    [0, 0, 0, 0],     # C
    [20, 0, 0, 0],    # G
    [0, 0, 20, 0],    # T
])
UNIFORM = np.full(4, 0.25)


def _random_sequences(rng, n, length, prefix):
    return {f"{prefix}{i}": "".join(rng.choice(list("ACGT"), size=length)) for i in range(n)}


def test_read_jaspar_labelled_and_plain(tmp_path):
    path = tmp_path / "motifs.jaspar"
    path.write_text(
        ">MA0001.1 GATA\n"
        "A  [ 0 20  0 20 ]\n"
        "C  [ 0  0  0  0 ]\n"
        "G  [20  0  0  0 ]\n"
        "T  [ 0  0 20  0 ]\n"
        ">MA0002.1\n"
        "1 2\n3 4\n5 6\n7 8\n"
    )
    motifs = read_jaspar(path)
    assert list(motifs) == ["MA0001.1 GATA", "MA0002.1"]
    assert np.array_equal(motifs["MA0001.1 GATA"], GATA_COUNTS)
    assert motifs["MA0002.1"].shape == (4, 2)


def test_best_relative_score_finds_site_on_both_strands():
    pwm = build_pwm(GATA_COUNTS, UNIFORM)
    scores = best_relative_scores(
        {"forward": "CCCGATACCC", "reverse": "CCCTATCCCC", "none": "CCCCCCCCCC",
         "short": "GAT", "masked": "NNNNNN"},
        pwm,
    )
    assert scores["forward"] == pytest.approx(1.0)
    assert scores["reverse"] == pytest.approx(1.0)
    assert scores["none"] < 0.5
    assert np.isnan(scores["short"])
    assert np.isnan(scores["masked"])


def test_shuffle_keeps_composition_and_is_seeded():
    seqs = {"a": "AAAACCGT", "b": "GGGTTT"}
    one = shuffle_sequences(seqs, n=4, seed=3)
    two = shuffle_sequences(seqs, n=4, seed=3)
    assert one == two
    assert len(one) == 4
    assert sorted(one["shuffled1_a"]) == sorted("AAAACCGT")
    assert sorted(one["shuffled2_b"]) == sorted("GGGTTT")


def test_wrap_pwm_enrich_detects_planted_motif(tmp_path, rng):
    targets = _random_sequences(rng, 40, 60, "t")
    targets = {k: v[:20] + "GATA" + v[24:] for k, v in targets.items()}
    background = _random_sequences(rng, 200, 60, "b")
    control = np.array([[5, 5, 5], [5, 5, 5], [5, 5, 5], [5, 5, 5]])

    res = wrap_pwm_enrich(
        targets,
        {"GATA": GATA_COUNTS, "flat": control},
        background=background,
        score_threshold=0.95,
        projectfolder=tmp_path,
        projectname="tf",
        top_motifs=5,
    )

    report = res["group_report"]
    assert report.iloc[0]["motif"] == "GATA"
    assert report.iloc[0]["target_hits"] == 40
    assert report.iloc[0]["p_adjusted"] < 1e-5
    assert res["sequence_report"].shape == (40, 3)
    assert (tmp_path / "tf_motif_enrichment_group_report.txt").exists()
    assert (tmp_path / "tf_motif_enrichment_sequence_report.txt").exists()
    assert (tmp_path / "tf_motif_enrichment_top5.png").exists()
    record = json.loads((tmp_path / "tf_run_info_pwm_enrich.json").read_text())
    assert record["input_data"]["n_background"] == 200


def test_wrap_pwm_enrich_shuffled_background(tmp_path, rng):
    targets = _random_sequences(rng, 10, 40, "t")
    res = wrap_pwm_enrich(targets, {"GATA": GATA_COUNTS}, n_background=30,
                          projectfolder=tmp_path)
    assert res["group_report"].iloc[0]["background_total"] == 30


def test_invalid_sequence_characters(tmp_path):
    with pytest.raises(ValueError, match="invalid characters"):
        wrap_pwm_enrich({"s1": "ACGTXX"}, {"GATA": GATA_COUNTS}, projectfolder=tmp_path)


def test_malformed_motif(tmp_path):
    with pytest.raises(ValueError, match="4 x L"):
        wrap_pwm_enrich({"s1": "ACGT"}, {"bad": np.ones((3, 4))}, projectfolder=tmp_path)


def test_build_pwm_needs_positive_background():
    with pytest.raises(ValueError, match="> 0"):
        build_pwm(GATA_COUNTS, np.array([0.5, 0.0, 0.25, 0.25]))
    with pytest.raises(ValueError, match="four values"):
        build_pwm(GATA_COUNTS, np.full(3, 1 / 3))


def test_wrap_pwm_enrich_rejects_background_missing_a_base(tmp_path):
    with pytest.raises(ValueError, match="Background frequencies"):
        wrap_pwm_enrich({"s1": "ACGTACGT"}, {"GATA": GATA_COUNTS},
                        background={"b1": "AAGGTTAA"}, projectfolder=tmp_path)
