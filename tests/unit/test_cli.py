"""Tests for the gewe-bridge CLI."""

from __future__ import annotations

import json
import stat
import sys
from pathlib import Path

import pytest
from click.testing import CliRunner

from gewe_bridge.cli import cli


def _write_config(tmp_path: Path, **values) -> str:
    data = {"state_dir": str(tmp_path / "state"), "silk_auto_download": False}
    data.update(values)
    path = tmp_path / "gewe.json"
    path.write_text(json.dumps(data))
    return str(path)


def test_missing_config_file_fails(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["--config", str(tmp_path / "nope.json"), "install-silk"])
    assert result.exit_code != 0
    assert "Config file not found" in result.output


def test_serve_requires_credentials(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("GEWE_TOKEN", raising=False)
    monkeypatch.delenv("GEWE_APP_ID", raising=False)
    result = CliRunner().invoke(cli, ["--config", _write_config(tmp_path), "serve"])
    assert result.exit_code == 1
    assert "GeWe not configured" in result.output


def test_install_silk_disabled_exits_nonzero(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["--config", _write_config(tmp_path), "install-silk"])
    assert result.exit_code == 1


@pytest.mark.skipif(sys.platform == "win32", reason="uses a shell script decoder")
def test_decode_voice_writes_wav(tmp_path: Path) -> None:
    decoder = tmp_path / "dec"
    decoder.write_text("#!/bin/sh\nprintf 'RIFFwav' > \"$2\"\n")
    decoder.chmod(decoder.stat().st_mode | stat.S_IXUSR)
    config = _write_config(
        tmp_path,
        voice_decode_path=str(decoder),
        voice_decode_args=["{input}", "{output}"],
        voice_decode_output="wav",
    )
    source = tmp_path / "in.silk"
    source.write_bytes(b"#!SILK_V3data")
    output = tmp_path / "out.wav"

    result = CliRunner().invoke(cli, ["--config", config, "decode-voice", str(source), str(output)])

    assert result.exit_code == 0, result.output
    assert output.read_bytes() == b"RIFFwav"
