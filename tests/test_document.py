"""Tests for document loading, request validation and the shared state."""
from __future__ import annotations

import os
import threading
from pathlib import Path

import pytest

from mdglance.document import (
    APP_DISPLAY_NAME,
    LARGE_FILE_THRESHOLD,
    DocumentSnapshot,
    DocumentState,
    SizeClass,
    classify_size,
    load_document,
    validate_request_path,
)
from mdglance.errors import EmptyFileError, NotFoundError, ReadFailureError, UnsupportedTypeError


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_load_document_reads_file(tmp_path: Path) -> None:
    doc = _write(tmp_path / "notes.md", "# Notes\nhello\n")
    snapshot = load_document(doc)

    assert snapshot.content == "# Notes\nhello\n"
    assert snapshot.canonical_path == str(doc.resolve())
    assert snapshot.display_name == "notes.md"
    assert snapshot.size_class is SizeClass.NORMAL
    assert snapshot.window_title == "notes.md - mdglance"


def test_load_document_missing_file(tmp_path: Path) -> None:
    with pytest.raises(NotFoundError) as excinfo:
        load_document(tmp_path / "absent.md")
    assert excinfo.value.path == str(tmp_path / "absent.md")


def test_load_document_whitespace_only_is_empty(tmp_path: Path) -> None:
    doc = _write(tmp_path / "blank.md", "  \n\t\n")

    with pytest.raises(EmptyFileError):
        load_document(doc)


def test_load_document_invalid_utf8_is_read_failure(tmp_path: Path) -> None:
    doc = tmp_path / "binary.md"
    doc.write_bytes(b"\xff\xfe\x00bad")

    with pytest.raises(ReadFailureError):
        load_document(doc)


def test_load_document_directory_is_read_failure(tmp_path: Path) -> None:
    folder = tmp_path / "folder.md"
    folder.mkdir()

    with pytest.raises(ReadFailureError):
        load_document(folder)


def test_large_file_classification(tmp_path: Path) -> None:
    doc = _write(tmp_path / "big.md", "# Big\n" + "x" * (LARGE_FILE_THRESHOLD + 10))

    assert load_document(doc).size_class is SizeClass.LARGE
    assert load_document(doc, no_truncate=True).size_class is SizeClass.NORMAL


def test_classify_size_threshold_is_exclusive() -> None:
    assert classify_size(LARGE_FILE_THRESHOLD) is SizeClass.NORMAL
    assert classify_size(LARGE_FILE_THRESHOLD + 1) is SizeClass.LARGE


def test_empty_snapshot_defaults() -> None:
    snapshot = DocumentSnapshot()

    assert not snapshot.is_open
    assert snapshot.display_name == APP_DISPLAY_NAME
    assert snapshot.window_title == APP_DISPLAY_NAME
    assert snapshot.file_dir == ""


def test_validate_request_path_accepts_markdown(tmp_path: Path) -> None:
    doc = _write(tmp_path / "sub" / "Doc.MD", "# hi")
    relative_form = tmp_path / "sub" / ".." / "sub" / "Doc.MD"

    assert validate_request_path(str(relative_form)) == doc.resolve()


@pytest.mark.parametrize("name", ["notes.txt", "script.py", "noext"])
def test_validate_request_path_rejects_other_types(tmp_path: Path, name: str) -> None:
    target = _write(tmp_path / name, "content")

    with pytest.raises(UnsupportedTypeError):
        validate_request_path(target)


def test_validate_request_path_missing(tmp_path: Path) -> None:
    with pytest.raises(NotFoundError):
        validate_request_path(tmp_path / "gone.md")


def test_validate_request_path_rejects_symlink_to_other_type(tmp_path: Path) -> None:
    secret = _write(tmp_path / "secret.txt", "do not show")
    link = tmp_path / "innocent.md"
    os.symlink(secret, link)

    with pytest.raises(UnsupportedTypeError):
        validate_request_path(link)


def test_validate_request_path_resolves_symlink(tmp_path: Path) -> None:
    real = _write(tmp_path / "real" / "doc.markdown", "# real")
    link = tmp_path / "link.md"
    os.symlink(real, link)

    assert validate_request_path(link) == real.resolve()


def test_state_load_replaces_snapshot_without_listeners(tmp_path: Path) -> None:
    doc = _write(tmp_path / "a.md", "# A")
    state = DocumentState()
    calls: list[DocumentSnapshot] = []
    state.add_replace_listener(calls.append)

    state.load(doc)

    assert state.snapshot().canonical_path == str(doc.resolve())
    assert calls == []


def test_state_replace_notifies_listeners(tmp_path: Path) -> None:
    first = _write(tmp_path / "a.md", "# A")
    second = _write(tmp_path / "b.md", "# B")
    state = DocumentState()
    state.load(first)
    seen: list[str] = []
    state.add_replace_listener(lambda snap: seen.append(snap.canonical_path))

    result = state.replace(second)

    assert result.content == "# B"
    assert state.snapshot() is result
    assert seen == [str(second.resolve())]


def test_failed_replace_leaves_state_unchanged(tmp_path: Path) -> None:
    doc = _write(tmp_path / "a.md", "# A")
    empty = _write(tmp_path / "empty.md", "   ")
    state = DocumentState()
    before = state.load(doc)
    calls: list[DocumentSnapshot] = []
    state.add_replace_listener(calls.append)

    with pytest.raises(EmptyFileError):
        state.replace(empty)
    with pytest.raises(NotFoundError):
        state.replace(tmp_path / "missing.md")

    assert state.snapshot() is before
    assert calls == []


def test_listener_failure_does_not_escape(tmp_path: Path) -> None:
    doc = _write(tmp_path / "a.md", "# A")
    state = DocumentState()
    seen: list[str] = []

    def broken(_snapshot: DocumentSnapshot) -> None:
        raise RuntimeError("boom")

    state.add_replace_listener(broken)
    state.add_replace_listener(lambda snap: seen.append(snap.display_name))

    state.replace(doc)

    assert seen == ["a.md"]


def test_open_request_validates_before_replacing(tmp_path: Path) -> None:
    doc = _write(tmp_path / "a.md", "# A")
    txt = _write(tmp_path / "b.txt", "text")
    state = DocumentState()
    state.load(doc)

    with pytest.raises(UnsupportedTypeError):
        state.open_request(str(txt))
    assert state.snapshot().canonical_path == str(doc.resolve())

    other = _write(tmp_path / "c.md", "# C")
    state.open_request(str(other))
    assert state.snapshot().canonical_path == str(other.resolve())


def test_refresh_content_keeps_identity(tmp_path: Path) -> None:
    doc = _write(tmp_path / "a.md", "# A\nold")
    state = DocumentState()
    state.load(doc)
    doc.write_text("# A\nnew", encoding="utf-8")

    refreshed = state.refresh_content(doc)

    assert refreshed is not None
    assert refreshed.content == "# A\nnew"
    assert refreshed.canonical_path == str(doc.resolve())
    assert refreshed.display_name == "a.md"


def test_refresh_content_ignores_files_that_are_no_longer_open(tmp_path: Path) -> None:
    first = _write(tmp_path / "a.md", "# A")
    second = _write(tmp_path / "b.md", "# B")
    state = DocumentState()
    state.load(second)

    assert state.refresh_content(first) is None
    assert state.snapshot().content == "# B"


def test_refresh_content_failure_propagates_and_keeps_state(tmp_path: Path) -> None:
    doc = _write(tmp_path / "a.md", "# A")
    state = DocumentState()
    before = state.load(doc)
    doc.write_text("", encoding="utf-8")

    with pytest.raises(EmptyFileError):
        state.refresh_content(doc)
    assert state.snapshot() is before


def test_sections_only_for_large_documents(tmp_path: Path) -> None:
    small = _write(tmp_path / "small.md", "# A\ntext\n# B\n")
    big = _write(tmp_path / "big.md", "intro\n# A\n" + ("y" * 80 + "\n") * 7000 + "# B\nend\n")
    state = DocumentState()

    assert state.sections() == []
    state.load(small)
    assert state.sections() == []
    state.load(big)
    assert [s.title for s in state.sections()] == ["Introduction", "A", "B"]


def test_concurrent_reads_never_see_torn_state(tmp_path: Path) -> None:
    docs = [_write(tmp_path / f"doc{i}.md", f"# Document {i}\n" * (i + 1)) for i in range(4)]
    expected = {str(doc.resolve()): doc.read_text(encoding="utf-8") for doc in docs}
    state = DocumentState()
    state.load(docs[0])
    stop = threading.Event()
    torn: list[tuple[str, str]] = []

    def reader() -> None:
        while not stop.is_set():
            snap = state.snapshot()
            if expected.get(snap.canonical_path) != snap.content:
                torn.append((snap.canonical_path, snap.content))

    readers = [threading.Thread(target=reader) for _ in range(6)]
    for thread in readers:
        thread.start()
    for round_number in range(200):
        state.replace(docs[round_number % len(docs)])
    stop.set()
    for thread in readers:
        thread.join()

    assert torn == []
    last = docs[199 % len(docs)]
    assert state.snapshot().canonical_path == str(last.resolve())


def _untraversable(self: Path) -> bool:
    raise PermissionError(13, "Permission denied", str(self))


def test_load_document_unreadable_parent_is_read_failure(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    doc = _write(tmp_path / "locked" / "a.md", "# A")
    monkeypatch.setattr(Path, "exists", _untraversable)

    with pytest.raises(ReadFailureError):
        load_document(doc)


def test_validate_request_path_unreadable_parent_is_read_failure(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    doc = _write(tmp_path / "locked" / "a.md", "# A")
    monkeypatch.setattr(Path, "exists", _untraversable)

    with pytest.raises(ReadFailureError):
        validate_request_path(doc)
