"""Tests for the command line entry point (no Qt, no real daemon)."""
from __future__ import annotations

from pathlib import Path

import pytest

import mdglance.app as app
from mdglance import __version__
from mdglance.config import AppConfig


@pytest.fixture()
def launches(monkeypatch: pytest.MonkeyPatch) -> dict[str, list]:
    recorded: dict[str, list] = {"forwarded": [], "daemons": []}
    monkeypatch.setattr(app, "load_config", lambda: AppConfig())
    monkeypatch.setattr(app, "probe_and_forward", lambda path: recorded["forwarded"].append(path) or False)

    def fake_daemon(state, config) -> int:
        recorded["daemons"].append(state.snapshot())
        return 0

    monkeypatch.setattr(app, "_start_daemon", fake_daemon)
    return recorded


def test_version_flag(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        app.main(["--version"])

    assert excinfo.value.code == 0
    assert __version__ in capsys.readouterr().out


def test_missing_file_exits_with_error(tmp_path: Path, launches, capsys: pytest.CaptureFixture[str]) -> None:
    code = app.main([str(tmp_path / "missing.md")])

    assert code == 1
    assert "File not found" in capsys.readouterr().err
    assert launches["forwarded"] == []


def test_unsupported_type_exits_with_error(tmp_path: Path, launches) -> None:
    txt = tmp_path / "notes.txt"
    txt.write_text("hello", encoding="utf-8")

    assert app.main([str(txt)]) == 1
    assert launches["daemons"] == []


def test_forwarded_launch_exits_cleanly(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    doc = tmp_path / "doc.md"
    doc.write_text("# Doc", encoding="utf-8")
    forwarded: list = []
    monkeypatch.setattr(app, "load_config", lambda: AppConfig())
    monkeypatch.setattr(app, "probe_and_forward", lambda path: forwarded.append(path) or True)

    def no_daemon(state, config) -> int:
        raise AssertionError("should not start a daemon")

    monkeypatch.setattr(app, "_start_daemon", no_daemon)

    assert app.main([str(doc)]) == 0
    assert forwarded == [doc]


def test_relative_path_is_resolved_against_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, launches) -> None:
    doc = tmp_path / "doc.md"
    doc.write_text("# Doc", encoding="utf-8")
    monkeypatch.chdir(tmp_path)

    assert app.main(["doc.md"]) == 0
    assert launches["forwarded"] == [Path.cwd() / "doc.md"]
    assert launches["daemons"][0].canonical_path == str(doc.resolve())


def test_empty_file_exits_with_error(tmp_path: Path, launches, capsys: pytest.CaptureFixture[str]) -> None:
    doc = tmp_path / "empty.md"
    doc.write_text("\n\n", encoding="utf-8")

    assert app.main([str(doc)]) == 1
    assert "empty" in capsys.readouterr().err.lower()
    assert launches["daemons"] == []


def test_no_path_starts_empty_daemon(launches) -> None:
    assert app.main([]) == 0
    assert launches["forwarded"] == [None]
    assert not launches["daemons"][0].is_open


def test_no_truncate_flag_reaches_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    doc = tmp_path / "big.md"
    doc.write_text("# Big\n" + "x" * (600 * 1024), encoding="utf-8")
    monkeypatch.setattr(app, "load_config", lambda: AppConfig())
    monkeypatch.setattr(app, "probe_and_forward", lambda path: False)
    seen = []
    monkeypatch.setattr(app, "_start_daemon", lambda state, config: seen.append(state.snapshot()) or 0)

    assert app.main(["--no-truncate", str(doc)]) == 0
    assert not seen[0].is_large


def test_inaccessible_path_exits_with_error(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, launches, capsys: pytest.CaptureFixture[str]
) -> None:
    def untraversable(self: Path) -> bool:
        raise PermissionError(13, "Permission denied", str(self))

    monkeypatch.setattr(Path, "exists", untraversable)

    assert app.main([str(tmp_path / "locked" / "doc.md")]) == 1
    assert "Cannot access" in capsys.readouterr().err
    assert launches["forwarded"] == []
