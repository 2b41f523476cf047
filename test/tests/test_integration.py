"""End-to-end runs of both stages over the synthetic dataset."""

import logging

import polars as pl
import pytest
import yaml

from conftest import LINEAGES, NEWICK, SEQUENCES
from microbiome_asv.analysis.workflow import AnalysisWorkflow
from microbiome_asv.cli import main
from microbiome_asv.core.config import Config
from microbiome_asv.pipeline import denoise
from microbiome_asv.pipeline.denoise import DenoisePipeline
from microbiome_asv.wrangle.dataset import AmpliconDataset


def analysis_config(run_dir, **analysis):
    section = {
        "group_column": "diet",
        "alpha_metrics": ["shannon", "inverse_simpson", "faith_pd"],
        "beta_metrics": ["braycurtis", "weighted_unifrac"],
        "permutations": 99,
    }
    section.update(analysis)
    return {"run": {"output_dir": str(run_dir), "seed": 1}, "analysis": section}


@pytest.fixture
def saved_run(sample_dataset, tmp_path):
    run_dir = tmp_path / "run"
    sample_dataset.save(run_dir / "dataset")
    return run_dir


@pytest.mark.integration
class TestAnalysisWorkflow:
    def test_full_run(self, saved_run):
        workflow = AnalysisWorkflow(Config.from_dict(analysis_config(saved_run)))
        tables = workflow.run()

        assert workflow.levels == ["control", "high_fat"]
        assert set(tables) == {
            "library_sizes", "library_size_summary", "alpha_diversity",
            "alpha_tests", "beta_tests", "differential_abundance",
        }
        out = saved_run / "analysis"
        for name in tables:
            assert (out / "tables" / f"{name}.tsv").exists()
        for figure in (
            "library_sizes.png", "rarefaction_curves.png", "composition_phylum.png",
            "alpha_diversity.png", "pcoa_braycurtis.png", "pcoa_weighted_unifrac.png",
            "differential_abundance.png",
        ):
            assert (out / "figures" / figure).exists()
        assert (out / "interactive" / "differential_abundance.html").exists()
        assert "Differential abundance" in (out / "logs" / "run.log").read_text()

    def test_chloroplasts_removed_before_analysis(self, saved_run):
        tables = AnalysisWorkflow(Config.from_dict(analysis_config(saved_run))).run()

        assert "asv06" not in tables["differential_abundance"]["feature_id"].to_list()
        # 1150 total reads minus 30 chloroplast reads
        sizes = dict(zip(tables["library_sizes"]["sample"], tables["library_sizes"]["reads"]))
        assert sizes["A1"] == 1120

    def test_statistics(self, saved_run):
        tables = AnalysisWorkflow(Config.from_dict(analysis_config(saved_run))).run()

        beta = tables["beta_tests"]
        assert beta.columns[0] == "metric"
        assert beta.height == 4
        top = tables["differential_abundance"].row(0, named=True)
        assert top["feature_id"] == "asv05"
        assert top["log2_fold_change"] > 3

    def test_configured_depth(self, saved_run):
        config = analysis_config(saved_run, rarefaction_depth=1125)
        tables = AnalysisWorkflow(Config.from_dict(config)).run()
        # A1 (1120) and A3 (1115) fall below the depth
        assert tables["alpha_diversity"].height == 6

    def test_without_tree(self, sample_counts, sample_taxonomy, sample_metadata, tmp_path, caplog):
        run_dir = tmp_path / "run"
        AmpliconDataset(
            counts=sample_counts, taxonomy=sample_taxonomy, metadata=sample_metadata
        ).save(run_dir / "dataset")

        with caplog.at_level(logging.WARNING):
            tables = AnalysisWorkflow(Config.from_dict(analysis_config(run_dir))).run()

        assert "faith_pd" not in tables["alpha_diversity"].columns
        assert tables["beta_tests"]["metric"].unique().to_list() == ["braycurtis"]
        assert "no tree" in caplog.text

    def test_missing_group(self, saved_run):
        config = analysis_config(saved_run, groups=["control", "vegan"])
        with pytest.raises(ValueError, match="vegan"):
            AnalysisWorkflow(Config.from_dict(config)).run()

    def test_cli(self, saved_run, tmp_path):
        path = tmp_path / "analysis.yaml"
        path.write_text(yaml.safe_dump(analysis_config(saved_run)))

        assert main(["analyze", "--config", str(path)]) == 0
        assert (saved_run / "analysis" / "tables" / "alpha_tests.tsv").exists()


@pytest.fixture
def reference_fasta(tmp_path):
    path = tmp_path / "reference.fa"
    path.write_text(
        "".join(
            f">ref{i} {LINEAGES[f]}\n{SEQUENCES[f]}\n" for i, f in enumerate(SEQUENCES)
        )
    )
    return path


@pytest.fixture
def fake_qiime(monkeypatch):
    """Stand in for the QIIME 2 and biom steps by writing their exports."""
    steps = []

    def record(name):
        def step(**kwargs):
            steps.append(name)
        return step

    def export(*, artifact, out_dir, logs, step):
        steps.append(f"export_{step}")
        out_dir.mkdir(parents=True, exist_ok=True)
        if step == "rep_seqs":
            (out_dir / "dna-sequences.fasta").write_text(
                "".join(f">{k}\n{v}\n" for k, v in SEQUENCES.items())
            )
        elif step == "denoising_stats":
            (out_dir / "stats.tsv").write_text(
                "sample-id\tinput\tfiltered\tdenoised\tmerged\tnon-chimeric\n"
                "#q2:types\tnumeric\tnumeric\tnumeric\tnumeric\tnumeric\n"
                "A1\t10\t10\t10\t9\t8\n"
                "B1\t10\t10\t10\t10\t10\n"
            )
        elif step == "tree":
            (out_dir / "tree.nwk").write_text(NEWICK)
        return out_dir

    def biom_to_tsv(*, biom_fp, tsv_fp, logs):
        steps.append("biom")
        lines = ["# Constructed from biom file", "#OTU ID\tA1\tB1"]
        lines += [f"{f}\t{i + 1}.0\t{6 - i}.0" for i, f in enumerate(SEQUENCES)]
        tsv_fp.write_text("\n".join(lines) + "\n")
        return tsv_fp

    monkeypatch.setattr(denoise, "require_executable", lambda name: name)
    monkeypatch.setattr(denoise, "qiime_import_paired", record("import"))
    monkeypatch.setattr(denoise, "qiime_dada2_denoise_paired", record("dada2"))
    monkeypatch.setattr(denoise, "qiime_phylogeny_mafft_fasttree", record("phylogeny"))
    monkeypatch.setattr(denoise, "qiime_export", export)
    monkeypatch.setattr(denoise, "biom_to_tsv", biom_to_tsv)
    return steps


@pytest.mark.integration
class TestDenoisePipeline:
    @pytest.fixture
    def config(self, raw_reads_dir, reference_fasta, tmp_path):
        return Config.from_dict(
            {
                "run": {"name": "mock", "output_dir": str(tmp_path / "run")},
                "reads": {"input_dir": str(raw_reads_dir), "quality_profile_samples": 1},
                "filter": {"trunc_len": [50, 50]},
                "taxonomy": {"reference_fasta": str(reference_fasta), "bootstraps": 20},
            }
        )

    def test_run(self, config, fake_qiime, tmp_path):
        dataset = DenoisePipeline(config).run()
        run_dir = tmp_path / "run"

        assert fake_qiime[:2] == ["import", "dada2"]
        assert "phylogeny" in fake_qiime
        assert (run_dir / "figures" / "quality_profiles.png").exists()
        assert (run_dir / "filtered" / "A1_F_filt.fastq.gz").exists()
        manifest = (run_dir / "manifest.tsv").read_text().splitlines()
        assert [line.split("\t")[0] for line in manifest[1:]] == ["A1", "B1"]

        assert dataset.get_sample_ids() == ["A1", "B1"]
        assert len(dataset.get_feature_ids()) == 6
        assert dataset.taxonomy.taxonomy["domain"].to_list() == ["Bacteria"] * 6
        assert dataset.tree is not None

    def test_read_tracking_saved(self, config, fake_qiime, tmp_path):
        DenoisePipeline(config).run()
        loaded = AmpliconDataset.load(tmp_path / "run" / "dataset")

        tracking = loaded.read_tracking
        a1 = tracking.filter(pl.col("sample") == "A1").row(0, named=True)
        assert a1["input"] == 10
        # two forward reads are too short after quality truncation
        assert a1["filtered"] == 8
        assert a1["non_chimeric"] == 8
        assert (tmp_path / "run" / "logs" / "run.log").exists()

    def test_no_reads_survive(self, config, fake_qiime, raw_reads_dir):
        config = Config.from_dict({**config.to_dict(), "filter": {"max_ee": 0.0, "trunc_q": 41}})
        with pytest.raises(ValueError, match="No sample has reads left"):
            DenoisePipeline(config).run()
