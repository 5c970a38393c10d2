"""Tests for the operator CLI."""

import re

import pytest
import yaml
from click.testing import CliRunner

from firmware_hub.auth import SCOPE_ADMIN, decode_token
from firmware_hub.cli import cli
from firmware_hub.config import load_settings


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "hub.yaml"
    path.write_text(yaml.safe_dump({
        "database_url": f"sqlite+aiosqlite:///{tmp_path / 'hub.db'}",
        "storage_path": str(tmp_path / "firmware"),
        "jwt_secret": "cli-secret",
        "log_level": "WARNING",
    }))
    return str(path)


@pytest.fixture
def firmware_file(tmp_path):
    path = tmp_path / "build.bin"
    path.write_bytes(b"DEAD")
    return str(path)


def run(config_file, *args):
    return CliRunner().invoke(cli, ["--config", config_file, *args])


def test_publish_list_verify_retract(config_file, firmware_file):
    result = run(config_file, "publish", firmware_file, "--version", "1.0.0", "--notes", "first")

    assert result.exit_code == 0, result.output
    assert "✓ Published release" in result.output
    release_id = re.search(r"release (\d+)", result.output).group(1)

    result = run(config_file, "releases")
    assert result.exit_code == 0
    assert "esp32" in result.output
    assert "1.0.0" in result.output

    result = run(config_file, "verify", release_id)
    assert result.exit_code == 0
    assert "✓" in result.output

    result = run(config_file, "retract", release_id, "--yes")
    assert result.exit_code == 0
    assert "✓ Retracted esp32 1.0.0" in result.output

    result = run(config_file, "releases")
    assert "No releases" in result.output


def test_publish_duplicate_exits_nonzero(config_file, firmware_file):
    run(config_file, "publish", firmware_file, "--version", "1.0.0")

    result = run(config_file, "publish", firmware_file, "--version", "1.0.0")

    assert result.exit_code == 1
    assert "✗" in result.output


def test_retract_unknown_release(config_file):
    result = run(config_file, "retract", "42", "--yes")

    assert result.exit_code == 1


def test_retract_cancelled(config_file, firmware_file):
    run(config_file, "publish", firmware_file, "--version", "1.0.0")

    result = CliRunner().invoke(cli, ["--config", config_file, "retract", "1"], input="n\n")

    assert result.exit_code == 0
    assert "Retraction cancelled" in result.output


def test_issue_token(config_file):
    result = run(config_file, "issue-token", "operator", "--scope", "admin")

    assert result.exit_code == 0
    token = decode_token(result.output.strip(), load_settings(config_file))
    assert token.sub == "operator"
    assert token.scope == SCOPE_ADMIN
