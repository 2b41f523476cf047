"""Tests for the command-line interface."""

from pathlib import Path

import pytest
import yaml

from microbiome_asv.cli import build_parser, main


class TestParser:
    def test_analyze(self):
        args = build_parser().parse_args(["analyze", "--config", "run.yaml"])
        assert args.command == "analyze"
        assert args.config == Path("run.yaml")

    def test_denoise_check_only(self):
        args = build_parser().parse_args(["denoise", "--config", "run.yaml", "--check-only"])
        assert args.command == "denoise"
        assert args.check_only is True

    def test_subcommand_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_config_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["analyze"])

    def test_no_abbreviations(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["analyze", "--conf", "run.yaml"])


class TestMain:
    def test_missing_config(self, tmp_path, capsys):
        code = main(["analyze", "--config", str(tmp_path / "missing.yaml")])

        assert code == 2
        assert "ERROR: Configuration file not found" in capsys.readouterr().err

    def test_invalid_section(self, tmp_path, capsys):
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump({"analysis": {"group_colum": "diet"}}))

        assert main(["analyze", "--config", str(path)]) == 2
        assert "Unknown keys for AnalysisParams" in capsys.readouterr().err

    def test_check_only_reports_missing_inputs(self, tmp_path, capsys, monkeypatch):
        monkeypatch.setattr(
            "microbiome_asv.pipeline.denoise.require_executable", lambda name: name
        )
        path = tmp_path / "run.yaml"
        path.write_text(
            yaml.safe_dump({"taxonomy": {"reference_fasta": str(tmp_path / "silva.fa")}})
        )

        assert main(["denoise", "--config", str(path), "--check-only"]) == 2
        assert "Input file not found" in capsys.readouterr().err
