import numpy as np
import pandas as pd
import pytest
import requests

from gexkit.region import (
    _request_with_retry,
    fetch_ensembl_genes,
    ld_colors,
    pack_gene_rows,
    plot_region,
)


@pytest.fixture
def assoc(rng):
    positions = np.arange(1_000_000, 1_500_000, 5_000)
    p = rng.uniform(1e-3, 1, size=len(positions))
    p[50] = 1e-12
    df = pd.DataFrame({
        "SNP": [f"rs{i}" for i in range(len(positions))],
        "CHR": 7,
        "BP": positions,
        "P": p,
    })
    other_chrom = pd.DataFrame({"SNP": ["rs_x"], "CHR": [8], "BP": [1_200_000], "P": [1e-20]})
    return pd.concat([df, other_chrom], ignore_index=True)


@pytest.fixture
def genes():
    return pd.DataFrame({
        "gene_name": ["GENE1", "GENE2", "GENE3", "FAR"],
        "chrom": ["chr7", "7", "7", "7"],
        "start": [1_140_000, 1_160_000, 1_300_000, 9_000_000],
        "end": [1_200_000, 1_190_000, 1_350_000, 9_100_000],
        "strand": ["+", "-", 1, 1],
    })


class _FakeResponse:
    def __init__(self, payload, status=200):
        self._payload = payload
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)

    def json(self):
        return self._payload


def test_plot_region_around_lead_snp(tmp_path, assoc, genes):
    ld = {"rs49": 0.9, "rs51": 0.5, "rs10": 0.1}
    res = plot_region(assoc, lead_snp="rs50", flank=100_000, ld=ld, genes=genes,
                      projectfolder=tmp_path, projectname="gwas")

    data = res["data"]
    assert res["lead_snp"] == "rs50"
    assert data["BP"].between(1_150_000, 1_350_000).all()
    assert "rs_x" not in set(data["SNP"])
    assert data.set_index("SNP").loc["rs50", "r2"] == 1.0
    assert data.set_index("SNP").loc["rs49", "r2"] == 0.9
    assert list(res["genes"]["gene_name"]) == ["GENE1", "GENE2", "GENE3"]
    assert res["file"] == tmp_path / "gwas_chr7_1150000_1350000.png"
    assert res["file"].exists()
    assert (tmp_path / "gwas_chr7_1150000_1350000.txt").exists()


def test_plot_region_defaults_lead_to_smallest_p(tmp_path, assoc):
    res = plot_region(assoc, chrom="chr7", start=1_000_000, end=1_400_000,
                      projectfolder=tmp_path, filename="locus")
    assert res["lead_snp"] == "rs50"
    assert res["genes"].empty
    assert res["file"].name == "locus.png"


def test_plot_region_argument_errors(tmp_path, assoc):
    with pytest.raises(ValueError, match="lead_snp"):
        plot_region(assoc, projectfolder=tmp_path)
    with pytest.raises(ValueError, match="not found"):
        plot_region(assoc, lead_snp="rs_missing", projectfolder=tmp_path)
    with pytest.raises(ValueError, match="P_VALUE not in association data"):
        plot_region(assoc, lead_snp="rs50", p_column="P_VALUE", projectfolder=tmp_path)
    with pytest.raises(ValueError, match="No association results"):
        plot_region(assoc, chrom=1, start=1, end=100, projectfolder=tmp_path)


def test_ld_colors_bins():
    colors = ld_colors(pd.Series([0.0, 0.1, 0.5, 0.95, np.nan]))
    assert colors.iloc[0] == colors.iloc[1]
    assert colors.iloc[3] == "#d43f3a"
    assert colors.iloc[4] == "#b0b0b0"


def test_pack_gene_rows_separates_overlaps():
    genes = pd.DataFrame({"start": [0, 50, 200, 210], "end": [100, 150, 300, 260]})
    assert pack_gene_rows(genes).tolist() == [0, 1, 0, 1]
    assert pack_gene_rows(genes, min_gap=150).tolist() == [0, 1, 2, 3]


def test_fetch_ensembl_genes(monkeypatch):
    calls = []

    def fake_request(method, url, **kwargs):
        calls.append(url)
        return _FakeResponse([
            {"id": "ENSG1", "external_name": "GENE1", "seq_region_name": "7",
             "start": 100, "end": 500, "strand": 1, "biotype": "protein_coding"},
            {"id": "ENSG2", "external_name": "LINC1", "seq_region_name": "7",
             "start": 600, "end": 900, "strand": -1, "biotype": "lncRNA"},
        ])

    monkeypatch.setattr(requests, "request", fake_request)
    genes = fetch_ensembl_genes("chr7", 1, 1000, genome_build="GRCh37")
    assert calls == ["https://grch37.rest.ensembl.org/overlap/region/human/7:1-1000"]
    assert genes["gene_name"].tolist() == ["GENE1"]
    assert genes["strand"].tolist() == [1]


def test_fetch_ensembl_genes_retries_then_raises(monkeypatch):
    attempts = []

    def failing_request(method, url, **kwargs):
        attempts.append(url)
        return _FakeResponse({}, status=503)

    monkeypatch.setattr(requests, "request", failing_request)
    monkeypatch.setattr("gexkit.region.time.sleep", lambda seconds: None)
    with pytest.raises(requests.HTTPError):
        fetch_ensembl_genes("7", 1, 1000)
    assert len(attempts) == 3


def test_fetch_ensembl_genes_unknown_build():
    with pytest.raises(ValueError, match="genome_build"):
        fetch_ensembl_genes("7", 1, 1000, genome_build="hg19")


def test_client_errors_are_not_retried(monkeypatch):
    attempts = []

    def bad_request(method, url, **kwargs):
        attempts.append(url)
        return _FakeResponse({"error": "unknown region"}, status=400)

    monkeypatch.setattr(requests, "request", bad_request)
    monkeypatch.setattr("gexkit.region.time.sleep", lambda seconds: None)
    with pytest.raises(requests.HTTPError, match="400"):
        fetch_ensembl_genes("7", 1, 1000)
    assert len(attempts) == 1


def test_rate_limit_is_retried(monkeypatch):
    statuses = [429, 200]

    def limited_request(method, url, **kwargs):
        return _FakeResponse([], status=statuses.pop(0))

    monkeypatch.setattr(requests, "request", limited_request)
    monkeypatch.setattr("gexkit.region.time.sleep", lambda seconds: None)
    assert _request_with_retry("GET", "https://rest.ensembl.org/x").status_code == 200
    assert statuses == []


def test_request_needs_at_least_one_attempt():
    with pytest.raises(ValueError, match="retries"):
        _request_with_retry("GET", "https://rest.ensembl.org/x", retries=0)
