"""Tests for the Held CLI — proves CLI dispatches correctly."""

import json
from pathlib import Path

import pytest

from conftest import CONFIG_DIR, make_object
from held.cli import DEFAULT_DATA, build_parser, default_data_dir, main
from held.config import PARAMS_FILENAME
from held.crypto.digest import compute_digest, passport_id
from held.models.anchoring import Fidelity


@pytest.fixture
def env_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """An empty .env and no key in the process environment."""
    monkeypatch.delenv("PRIVATE_KEY", raising=False)
    path = tmp_path / ".env"
    path.write_text("")
    return path


@pytest.fixture
def object_file(tmp_path: Path) -> Path:
    path = tmp_path / "item.json"
    path.write_text(json.dumps(make_object()))
    return path


class TestCLIParsing:
    def test_status_command(self) -> None:
        args = build_parser().parse_args(["status"])
        assert args.command == "status"

    def test_anchor_command(self) -> None:
        args = build_parser().parse_args([
            "anchor", "--object", "item.json", "--sync", "--premium",
            "--fidelity", "full", "--timeout", "45",
        ])
        assert args.command == "anchor"
        assert args.sync
        assert args.premium
        assert args.fidelity == "full"
        assert args.timeout == 45.0

    def test_reconcile_command(self) -> None:
        args = build_parser().parse_args([
            "reconcile", "--loop", "--interval", "30", "--iterations", "2",
        ])
        assert args.loop
        assert args.interval == 30.0
        assert args.iterations == 2
        assert args.batch is None

    def test_verify_command(self) -> None:
        args = build_parser().parse_args(["verify", "--object", "-"])
        assert args.object == "-"
        assert args.fidelity is None

    def test_tx_status_command(self) -> None:
        args = build_parser().parse_args(["tx-status", "0xabc"])
        assert args.tx_hash == "0xabc"

    def test_bad_fidelity_rejected(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["digest", "--object", "x", "--fidelity", "gold"])


class TestCLIExecution:
    def test_no_command_shows_help(self, capsys) -> None:
        assert main([]) == 0
        assert "usage" in capsys.readouterr().out.lower()

    def test_check_config_runs(self) -> None:
        assert main(["check-config"]) == 0

    def test_digest_runs_offline(self, env_file: Path, object_file: Path, capsys) -> None:
        exit_code = main([
            "--env-file", str(env_file),
            "digest", "--object", str(object_file), "--fidelity", "full",
        ])
        assert exit_code == 0
        data = json.loads(capsys.readouterr().out)
        assert data["objectId"] == "obj-001"
        assert data["digest"] == compute_digest(make_object(), Fidelity.FULL)
        assert data["passportId"] == passport_id(make_object())

    def test_status_without_key(self, env_file: Path, capsys) -> None:
        assert main(["--env-file", str(env_file), "status"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["status"] == "not_configured"

    def test_anchor_without_key_fails(
        self, env_file: Path, object_file: Path, capsys,
    ) -> None:
        exit_code = main([
            "--env-file", str(env_file), "anchor", "--object", str(object_file),
        ])
        assert exit_code == 1
        assert "PRIVATE_KEY" in capsys.readouterr().err

    def test_digest_invalid_object(self, env_file: Path, tmp_path: Path, capsys) -> None:
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"title": "no id"}))
        exit_code = main(["--env-file", str(env_file), "digest", "--object", str(path)])
        assert exit_code == 1
        assert "Failed" in capsys.readouterr().err

    def test_check_config_reads_config_dir_env(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys,
    ) -> None:
        params = json.loads((CONFIG_DIR / PARAMS_FILENAME).read_text())
        params["verification"]["logs_page_blocks"] = 0
        (tmp_path / PARAMS_FILENAME).write_text(json.dumps(params))
        monkeypatch.setenv("HELD_CONFIG_DIR", str(tmp_path))
        assert main(["check-config"]) == 1
        assert "logs_page_blocks must be >= 1" in capsys.readouterr().err

    def test_data_dir_from_environment(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("HELD_DATA_DIR", str(tmp_path / "records"))
        assert default_data_dir() == tmp_path / "records"
        monkeypatch.delenv("HELD_DATA_DIR")
        assert default_data_dir() == DEFAULT_DATA
