import json
from pathlib import Path

import jwt
import pytest
import yaml

from cloudvault.cli.main import main


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    data = {
        "storage_dir": str(tmp_path / "cli-storage"),
        "auth": {"secret_key": "cli-secret"},
    }
    with open(config_dir / "config.yaml", "w") as f:
        yaml.safe_dump(data, f)
    return config_dir


def test_no_command_prints_help(capsys: pytest.CaptureFixture[str]) -> None:
    assert main([]) == 1
    assert "usage: cloudvault" in capsys.readouterr().out


def test_token(config_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["token", "alice@example.com", "--config-dir", str(config_dir)]) == 0

    token = capsys.readouterr().out.strip()
    claims = jwt.decode(token, "cli-secret", algorithms=["HS256"])
    assert claims["sub"] == "alice@example.com"


def test_integrity_on_empty_store(
    config_dir: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert main(["integrity", "alice@example.com", "--config-dir", str(config_dir)]) == 0

    report = json.loads(capsys.readouterr().out)
    assert report["scanned"] == 0
    assert report["path_drift"] == 0


def test_sweep_blobs_on_empty_store(
    config_dir: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert main(["sweep-blobs", "--config-dir", str(config_dir)]) == 0

    report = json.loads(capsys.readouterr().out)
    assert report == {"scanned": 0, "referenced": 0, "too_recent": 0, "deleted": 0}


def test_token_requires_configured_secret(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.delenv("CLOUDVAULT_JWT_SECRET", raising=False)
    empty_dir = tmp_path / "empty-config"
    empty_dir.mkdir()

    with pytest.raises(SystemExit) as exc_info:
        main(["token", "alice@example.com", "--config-dir", str(empty_dir)])

    assert exc_info.value.code == 1
    assert capsys.readouterr().out == ""
