"""
CLI argument parsing and main() tests.
"""

import json
from unittest.mock import patch

import pytest

from practice_pipeline import build_arg_parser, main


@pytest.mark.unit
class TestArgumentParser:

    def test_single_url(self):
        args = build_arg_parser().parse_args(["--url", "https://brightsmile.co.uk"])

        assert args.url == "https://brightsmile.co.uk"
        assert args.provision is None
        assert args.log_level == "INFO"

    def test_batch_urls(self):
        args = build_arg_parser().parse_args(["--urls", "a.example.com", "b.example.com", "--no-provision"])

        assert args.urls == ["a.example.com", "b.example.com"]
        assert args.provision is False

    def test_recover(self):
        args = build_arg_parser().parse_args(["--recover", "p-123456", "--phase", "deployment"])

        assert args.recover == "p-123456"
        assert args.phase == "deployment"

    def test_recover_phase_defaults_to_persistence(self):
        assert build_arg_parser().parse_args(["--recover", "p-1"]).phase == "persistence"

    def test_health_probe_flags(self):
        args = build_arg_parser().parse_args(["--health", "--probe"])

        assert args.health is True
        assert args.probe is True

    def test_invalid_phase_rejected(self):
        with pytest.raises(SystemExit):
            build_arg_parser().parse_args(["--recover", "p-1", "--phase", "enrichment"])


@pytest.mark.integration
class TestMain:

    def test_requires_an_action(self):
        with pytest.raises(SystemExit):
            main([])

    def test_single_url_without_credentials(self, capsys, tmp_path):
        output = tmp_path / "result.json"

        exit_code = main(["--url", "https://drsmith-dental.example.com", "--output", str(output)])

        assert exit_code == 0
        body = json.loads(capsys.readouterr().out)
        assert body["overall_status"] == "partial-success"
        assert json.loads(output.read_text())["practice_id"] == body["practice_id"]

    def test_invalid_url_exit_code(self, capsys):
        assert main(["--url", "not a url", "--no-provision"]) == 2

    def test_empty_urls_exit_code(self, capsys):
        assert main(["--urls"]) == 2

    def test_status_flag_wraps_output(self, capsys):
        exit_code = main(["--url", "https://drsmith-dental.example.com", "--no-provision", "--status"])

        body = json.loads(capsys.readouterr().out)
        assert exit_code == 0
        assert body["status"]["workflow_stats"]["total_workflows"] == 1

    def test_recover_synthesized(self, capsys):
        exit_code = main(["--recover", "ghost-123456"])

        body = json.loads(capsys.readouterr().out)
        assert exit_code == 0
        assert body["used_fallback"] is True
        assert "synthesized" in body["detail"]

    def test_discover_demo_leads(self, capsys):
        exit_code = main(["--discover", "dentist", "--limit", "2"])

        body = json.loads(capsys.readouterr().out)
        assert exit_code == 0
        assert body["leads_found"] == 2

    def test_health_probe(self, capsys):
        with patch("practice_pipeline.HealthCheck._check_connectivity", return_value=True) as mock_probe:
            exit_code = main(["--health", "--probe"])

        body = json.loads(capsys.readouterr().out)
        assert exit_code == 0
        assert body["connectivity"]["reachable"] is True
        assert mock_probe.call_count == 2

    def test_invalid_config_exit_code(self, monkeypatch, capsys):
        monkeypatch.setenv("BATCH_CONCURRENCY", "0")

        assert main(["--url", "https://brightsmile.co.uk"]) == 1

    def test_orchestration_fault_exit_code(self, capsys):
        with patch("practice_pipeline.aggregate_status", side_effect=RuntimeError("bug")):
            assert main(["--url", "https://brightsmile.co.uk", "--no-provision"]) == 1
