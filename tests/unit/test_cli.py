"""
Unit tests for the command-line entry points (no database required).
"""

import pytest

from patient_sync.cli import admin_cli, sync_cli
from patient_sync.core.config import PipelineSettings
from patient_sync.core.models import BatchStatus, SyncBatch


@pytest.fixture
def no_db_env(monkeypatch, tmp_path):
    monkeypatch.delenv("DB_PASSWORD", raising=False)
    return str(tmp_path / "absent.env")


class TestSyncParser:
    """Tests for the patient-sync parser"""

    def test_run_arguments(self):
        args = sync_cli.build_parser().parse_args(
            ["run", "--source", "hapi_fhir_r4", "--endpoint", "https://hapi.fhir.org/baseR4", "--page-size", "100"]
        )
        assert args.command == "run"
        assert args.page_size == 100
        assert args.env_file == ".env"
        assert args.batch_id is None

    def test_resume_requires_batch_id(self):
        with pytest.raises(SystemExit):
            sync_cli.build_parser().parse_args(["resume"])

    def test_no_command_prints_help(self, capsys):
        assert sync_cli.main([]) == 1
        assert "usage" in capsys.readouterr().out


class TestResolveSource:
    """Tests for building a SourceConfig for `run`"""

    def test_endpoint_uses_settings_defaults(self):
        args = sync_cli.build_parser().parse_args(
            ["run", "--source", "adhoc", "--endpoint", "https://fhir.example/r4/", "--page-size", "10"]
        )
        settings = PipelineSettings(min_request_interval=0.5, max_retries=1)

        source = sync_cli.resolve_source(args, settings)

        assert source.source_system == "adhoc"
        assert source.base_endpoint == "https://fhir.example/r4"
        assert source.page_size == 10
        assert source.min_request_interval == 0.5
        assert source.max_retries == 1

    def test_config_file(self, tmp_path):
        path = tmp_path / "sources.yaml"
        path.write_text("sources:\n  clinic_b:\n    base_endpoint: https://fhir.clinic-b.example/r4\n")
        args = sync_cli.build_parser().parse_args(["run", "--source", "clinic_b", "--config", str(path)])

        source = sync_cli.resolve_source(args, PipelineSettings())

        assert source.base_endpoint == "https://fhir.clinic-b.example/r4"
        assert source.page_size == 50

    def test_neither_config_nor_endpoint(self):
        args = sync_cli.build_parser().parse_args(["run", "--source", "adhoc"])
        with pytest.raises(ValueError):
            sync_cli.resolve_source(args, PipelineSettings())


class TestSyncMain:
    """Tests for error handling in the patient-sync entry point"""

    def test_missing_password_reported(self, no_db_env, capsys):
        code = sync_cli.main(
            ["run", "--source", "adhoc", "--endpoint", "https://fhir.example/r4", "--env-file", no_db_env]
        )

        assert code == 1
        assert "password" in capsys.readouterr().err

    def test_invalid_endpoint_reported(self, no_db_env, capsys):
        code = sync_cli.main(["run", "--source", "adhoc", "--endpoint", "fhir.example", "--env-file", no_db_env])

        assert code == 1
        assert "http" in capsys.readouterr().err

    @pytest.mark.parametrize(
        "status,expected",
        [(BatchStatus.COMPLETED, 0), (BatchStatus.CANCELLED, 0), (BatchStatus.FAILED, 1)],
    )
    def test_exit_code_for(self, status, expected):
        batch = SyncBatch(batch_id="b", source_system="s", base_endpoint="https://x.example", status=status)
        assert sync_cli.exit_code_for(batch) == expected


class TestAdminParser:
    """Tests for the patient-sync-admin parser"""

    def test_batches_status_choices(self):
        with pytest.raises(SystemExit):
            admin_cli.build_parser().parse_args(["batches", "--status", "quarantined"])

    def test_quality_trend_defaults(self):
        args = admin_cli.build_parser().parse_args(["quality-trend", "--source", "hapi_fhir_r4"])
        assert args.days == 30

    def test_invalid_rollup_date_reported(self, no_db_env, capsys):
        code = admin_cli.main(["rollup", "--source", "s", "--date", "not-a-date", "--env-file", no_db_env])

        assert code == 1
        assert "Error" in capsys.readouterr().err
