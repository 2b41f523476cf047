"""Tests for QIIME 2 command wrappers and export readers."""

from pathlib import Path

import polars as pl
import pytest

from microbiome_asv.core.config import DenoiseParams, FilterParams
from microbiome_asv.pipeline import qiime
from microbiome_asv.wrangle.abundance import AsvTable


@pytest.fixture
def recorded(monkeypatch):
    """Capture commands instead of running them."""
    calls = []

    def fake_run_cmd(*, cmd, log_file, logger=None):
        calls.append((list(cmd), Path(log_file)))

    monkeypatch.setattr(qiime, "run_cmd", fake_run_cmd)
    return calls


@pytest.fixture
def stats_tsv(tmp_path):
    """DADA2 ``stats.tsv`` as written by ``qiime tools export``."""
    path = tmp_path / "stats.tsv"
    path.write_text(
        "sample-id\tinput\tfiltered\tpercentage of input passed filter\tdenoised\t"
        "merged\tpercentage of input merged\tnon-chimeric\tpercentage of input non-chimeric\n"
        "#q2:types\tnumeric\tnumeric\tnumeric\tnumeric\tnumeric\tnumeric\tnumeric\tnumeric\n"
        "A1\t900\t880\t97.78\t870\t800\t88.89\t780\t86.67\n"
        "B1\t1000\t990\t99\t985\t950\t95\t940\t94\n"
    )
    return path


class TestCommands:
    def test_import(self, recorded, tmp_path):
        qiime.qiime_import_paired(
            manifest=tmp_path / "manifest.tsv",
            out_artifact=tmp_path / "demux.qza",
            logs=tmp_path / "logs",
        )
        cmd, log_file = recorded[0]

        assert cmd[:3] == ["qiime", "tools", "import"]
        assert "PairedEndFastqManifestPhred33V2" in cmd
        assert log_file.name == "01_import.log"

    def test_dada2_reads_prefiltered(self, recorded, tmp_path):
        qiime.qiime_dada2_denoise_paired(
            in_qza=tmp_path / "demux.qza",
            table_qza=tmp_path / "table.qza",
            repseqs_qza=tmp_path / "rep-seqs.qza",
            stats_qza=tmp_path / "stats.qza",
            params=DenoiseParams(chimera_method="pooled", min_overlap=20),
            filter_params=FilterParams(trunc_len=[240, 160], max_ee=[2, 5]),
            threads=4,
            logs=tmp_path / "logs",
        )
        cmd, _ = recorded[0]
        args = dict(zip(cmd[3::2], cmd[4::2]))

        assert args["--p-trunc-len-f"] == "0"
        assert args["--p-trunc-len-r"] == "0"
        assert args["--p-max-ee-r"] == "5.0"
        assert args["--p-chimera-method"] == "pooled"
        assert args["--p-min-overlap"] == "20"
        assert args["--p-n-threads"] == "4"

    def test_phylogeny(self, recorded, tmp_path):
        qiime.qiime_phylogeny_mafft_fasttree(
            repseqs_qza=tmp_path / "rep-seqs.qza",
            aligned_qza=tmp_path / "aligned.qza",
            masked_qza=tmp_path / "masked.qza",
            unrooted_qza=tmp_path / "unrooted.qza",
            rooted_qza=tmp_path / "rooted.qza",
            threads=2,
            logs=tmp_path / "logs",
        )
        cmd, _ = recorded[0]
        assert cmd[1:3] == ["phylogeny", "align-to-tree-mafft-fasttree"]
        assert str(tmp_path / "rooted.qza") in cmd

    def test_export_creates_directory(self, recorded, tmp_path):
        out = qiime.qiime_export(
            artifact=tmp_path / "table.qza",
            out_dir=tmp_path / "exports" / "table",
            logs=tmp_path / "logs",
            step="table",
        )
        assert out.is_dir()
        assert recorded[0][1].name == "05_export_table.log"

    def test_biom_convert(self, recorded, tmp_path):
        qiime.biom_to_tsv(
            biom_fp=tmp_path / "feature-table.biom",
            tsv_fp=tmp_path / "feature-table.tsv",
            logs=tmp_path / "logs",
        )
        assert recorded[0][0][:3] == ["biom", "convert", "--to-tsv"]


class TestReaders:
    def test_feature_table(self, biom_tsv):
        counts = qiime.read_feature_table(biom_tsv)

        assert isinstance(counts, AsvTable)
        assert len(counts.get_samples()) == 8
        assert len(counts.get_features()) == 6

    def test_taxonomy(self, taxonomy_tsv):
        taxonomy = qiime.read_taxonomy(taxonomy_tsv)
        assert taxonomy.taxonomy["confidence"].to_list() == [0.98] * 6

    def test_tree(self, tree_nwk):
        tree = qiime.read_tree(tree_nwk)
        assert {tip.name for tip in tree.tips()} == {f"asv0{i}" for i in range(1, 7)}

    def test_tree_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            qiime.read_tree(tmp_path / "tree.nwk")

    def test_denoising_stats(self, stats_tsv):
        stats = qiime.read_denoising_stats(stats_tsv)

        assert stats.columns == [
            "sample", "dada2_input", "dada2_filtered", "denoised", "merged", "non_chimeric",
        ]
        assert stats.row(0) == ("A1", 900, 880, 870, 800, 780)

    def test_denoising_stats_missing_columns(self, tmp_path):
        path = tmp_path / "stats.tsv"
        path.write_text("sample-id\tinput\nA1\t5\n")
        with pytest.raises(ValueError, match="missing columns"):
            qiime.read_denoising_stats(path)

    def test_denoising_stats_zero_padded_ids(self, tmp_path):
        path = tmp_path / "stats.tsv"
        path.write_text(
            "sample-id\tinput\tfiltered\tdenoised\tmerged\tnon-chimeric\n"
            "01\t900\t880\t870\t800\t780\n"
            "02\t1000\t990\t985\t950\t940\n"
        )
        assert qiime.read_denoising_stats(path)["sample"].to_list() == ["01", "02"]


class TestReadTracking:
    @pytest.fixture
    def filter_stats(self):
        return pl.DataFrame(
            {"sample": ["B1", "A1", "C1"], "reads_in": [1000, 1000, 500], "reads_out": [900, 1000, 0]}
        )

    def test_combined(self, filter_stats, stats_tsv):
        tracking = qiime.build_read_tracking(filter_stats, qiime.read_denoising_stats(stats_tsv))

        assert tracking["sample"].to_list() == ["A1", "B1", "C1"]
        assert tracking.columns == [
            "sample", "input", "filtered", "denoised", "merged", "non_chimeric", "percent_retained",
        ]
        a1 = tracking.row(0, named=True)
        assert a1["non_chimeric"] == 780
        assert a1["percent_retained"] == 78.0
        c1 = tracking.row(2, named=True)
        assert c1["denoised"] == 0
        assert c1["percent_retained"] == 0.0

    def test_without_denoising(self, filter_stats):
        tracking = qiime.build_read_tracking(filter_stats, None)
        assert tracking["non_chimeric"].to_list() == [0, 0, 0]
