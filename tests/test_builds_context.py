"""Tests for builds/context.py module.

Tests ignore pattern matching, context walking, tar streaming, and size
estimation.
"""

import os
import tarfile
from pathlib import Path

import pytest

from pctl.builds.context import (
    BYTES_PER_MB,
    ContextArchiver,
    ContextError,
    glob_match,
    load_dockerignore,
    matches_pattern,
    should_ignore,
    walk_context,
)


@pytest.fixture
def app_context(tmp_path: Path) -> Path:
    """Create a build context with ignorable content."""
    (tmp_path / "Dockerfile").write_text("FROM python:3.12-slim\n")
    (tmp_path / "app.py").write_text("print('app')\n")
    (tmp_path / "app.log").write_text("log line\n")
    (tmp_path / "sub").mkdir()
    (tmp_path / "sub" / "app.log").write_text("nested log\n")
    (tmp_path / "node_modules" / "pkg").mkdir(parents=True)
    (tmp_path / "node_modules" / "pkg" / "index.js").write_text("module.exports = 1\n")
    (tmp_path / ".dockerignore").write_text("# build junk\n\n*.log\nnode_modules/\n")
    return tmp_path


def _tar_names(stream) -> list[str]:
    with tarfile.open(fileobj=stream, mode="r|") as tar:
        return [member.name for member in tar]


class TestMatchesPattern:
    """Tests for ignore pattern matching."""

    def test_glob_matches_top_level(self):
        """'*.log' should match a top-level log file."""
        assert matches_pattern("app.log", "*.log")

    def test_glob_does_not_cross_slash(self):
        """'*.log' should not match a log file in a subdirectory."""
        assert not matches_pattern("sub/app.log", "*.log")

    def test_glob_with_directory(self):
        """A glob may name a directory segment explicitly."""
        assert matches_pattern("sub/app.log", "sub/*.log")
        assert not matches_pattern("sub/deeper/app.log", "sub/*.log")

    def test_trailing_slash_matches_subtree(self):
        """'node_modules/' should match the directory and everything below."""
        assert matches_pattern("node_modules", "node_modules/")
        assert matches_pattern("node_modules/pkg/index.js", "node_modules/")
        assert not matches_pattern("node_modules_old/x", "node_modules/")

    def test_bare_name_matches_itself_and_subtree(self):
        """'temp' should match 'temp' and 'temp/file.txt'."""
        assert matches_pattern("temp", "temp")
        assert matches_pattern("temp/file.txt", "temp")
        assert not matches_pattern("template.txt", "temp")

    def test_exact_file(self):
        """An exact path should match only itself."""
        assert matches_pattern("config/secret.env", "config/secret.env")
        assert not matches_pattern("config/other.env", "config/secret.env")

    def test_should_ignore_any_pattern(self):
        """should_ignore should succeed when any pattern matches."""
        patterns = ["*.log", "build/"]
        assert should_ignore("build/out.bin", patterns)
        assert should_ignore("x.log", patterns)
        assert not should_ignore("src/main.py", patterns)

    def test_no_patterns(self):
        """Nothing is ignored without patterns."""
        assert not should_ignore("anything", [])


class TestGlobMatch:
    """Tests for glob_match function."""

    def test_question_mark(self):
        """'?' should match exactly one non-slash character."""
        assert glob_match("file?.txt", "file1.txt")
        assert not glob_match("file?.txt", "file10.txt")

    def test_character_class(self):
        """Character classes and negation should work."""
        assert glob_match("v[0-9].txt", "v1.txt")
        assert not glob_match("v[^0-9].txt", "v1.txt")
        assert glob_match("v[^0-9].txt", "va.txt")

    def test_malformed_pattern_matches_nothing(self):
        """A malformed pattern should not match anything."""
        assert not glob_match("file[.txt", "file[.txt")


class TestLoadDockerignore:
    """Tests for load_dockerignore function."""

    def test_skips_comments_and_blanks(self, app_context: Path):
        """Blank and comment lines should be skipped."""
        assert load_dockerignore(app_context) == ["*.log", "node_modules/"]

    def test_missing_file(self, tmp_path: Path):
        """No .dockerignore should give no patterns."""
        assert load_dockerignore(tmp_path) == []

    def test_non_utf8_bytes(self, tmp_path: Path):
        """Undecodable bytes should not prevent loading the patterns."""
        (tmp_path / ".dockerignore").write_bytes(b"# caf\xe9\n*.log\n")
        assert load_dockerignore(tmp_path) == ["*.log"]

    def test_unreadable_file(self, tmp_path: Path):
        """A .dockerignore that cannot be read should raise ContextError."""
        (tmp_path / ".dockerignore").mkdir()
        with pytest.raises(ContextError) as exc_info:
            load_dockerignore(tmp_path)
        assert exc_info.value.code == "dockerignore_unreadable"


class TestWalkContext:
    """Tests for walk_context function."""

    def test_sorted_and_filtered(self, app_context: Path):
        """Should yield every non-ignored entry, skipping ignored subtrees."""
        patterns = load_dockerignore(app_context)
        names = [entry.rel_path for entry in walk_context(app_context, patterns)]
        assert sorted(names) == [".dockerignore", "Dockerfile", "app.py", "sub", "sub/app.log"]

    def test_order_is_stable(self, app_context: Path):
        """Two walks of the same tree should yield the same order."""
        first = [e.rel_path for e in walk_context(app_context, [])]
        second = [e.rel_path for e in walk_context(app_context, [])]
        assert first == second

    def test_missing_root(self, tmp_path: Path):
        """Walking a missing directory should raise ContextError."""
        with pytest.raises(ContextError) as exc_info:
            list(walk_context(tmp_path / "missing", []))
        assert exc_info.value.code == "context_read_error"

    def test_symlink_not_followed(self, tmp_path: Path):
        """Symlinked directories should be yielded but not descended."""
        target = tmp_path / "real"
        target.mkdir()
        (target / "file.txt").write_text("x")
        (tmp_path / "link").symlink_to(target, target_is_directory=True)

        entries = {entry.rel_path: entry for entry in walk_context(tmp_path, [])}
        assert "link" in entries
        assert not entries["link"].is_dir
        assert "link/file.txt" not in entries
        assert entries["real/file.txt"].is_regular


class TestCreateTarStream:
    """Tests for ContextArchiver.create_tar_stream."""

    def test_archive_contains_non_ignored_files(self, app_context: Path):
        """Archive should hold exactly the non-ignored tree."""
        with ContextArchiver().create_tar_stream(app_context) as stream:
            names = _tar_names(stream)
        assert sorted(names) == [".dockerignore", "Dockerfile", "app.py", "sub", "sub/app.log"]

    def test_archive_file_content(self, app_context: Path):
        """File content should survive archiving."""
        with ContextArchiver().create_tar_stream(app_context) as stream:
            with tarfile.open(fileobj=stream, mode="r|") as tar:
                for member in tar:
                    if member.name == "app.py":
                        extracted = tar.extractfile(member)
                        assert extracted is not None
                        assert extracted.read() == b"print('app')\n"
                        break
                else:
                    pytest.fail("app.py missing from archive")

    def test_large_file_streams(self, tmp_path: Path):
        """Archives larger than the pipe buffer should stream through."""
        payload = bytes(range(256)) * 8192  # 2 MB
        (tmp_path / "blob.bin").write_bytes(payload)
        with ContextArchiver().create_tar_stream(tmp_path) as stream:
            with tarfile.open(fileobj=stream, mode="r|") as tar:
                member = tar.next()
                assert member is not None
                assert member.size == len(payload)
                extracted = tar.extractfile(member)
                assert extracted is not None
                assert extracted.read() == payload

    def test_abandoned_stream_does_not_block(self, tmp_path: Path):
        """Closing the reader early should not hang the producer."""
        (tmp_path / "blob.bin").write_bytes(b"x" * (4 * BYTES_PER_MB))
        stream = ContextArchiver().create_tar_stream(tmp_path)
        assert stream.read(512)
        stream.close_reader()
        assert stream.closed

    def test_latin1_file_name(self, tmp_path: Path):
        """Files whose names are not valid UTF-8 should be archived."""
        raw_name = b"caf\xe9.txt"
        try:
            with open(os.path.join(os.fsencode(tmp_path), raw_name), "wb") as f:
                f.write(b"menu\n")
        except OSError:
            pytest.skip("filesystem rejects non-UTF-8 file names")

        with ContextArchiver().create_tar_stream(tmp_path) as stream:
            names = _tar_names(stream)
        assert names == [os.fsdecode(raw_name)]

    def test_missing_context(self, tmp_path: Path):
        """A missing context should raise before streaming starts."""
        with pytest.raises(ContextError) as exc_info:
            ContextArchiver().create_tar_stream(tmp_path / "missing")
        assert exc_info.value.code == "context_not_directory"

    def test_file_context(self, tmp_path: Path):
        """A file is not a valid context."""
        path = tmp_path / "file.txt"
        path.write_text("x")
        with pytest.raises(ContextError):
            ContextArchiver().create_tar_stream(path)


class TestContextSize:
    """Tests for size estimation and validation."""

    def test_size_excludes_ignored(self, app_context: Path):
        """Size should sum non-ignored regular files only."""
        expected = sum(
            len(p.read_bytes())
            for p in (
                app_context / ".dockerignore",
                app_context / "Dockerfile",
                app_context / "app.py",
                app_context / "sub" / "app.log",
            )
        )
        assert ContextArchiver().get_context_size(app_context) == expected

    def test_validate_returns_size(self, app_context: Path):
        """validate_context should return the context size."""
        archiver = ContextArchiver()
        assert archiver.validate_context(app_context) == archiver.get_context_size(
            app_context
        )

    def test_validate_missing(self, tmp_path: Path):
        """validate_context should reject a missing directory."""
        with pytest.raises(ContextError):
            ContextArchiver().validate_context(tmp_path / "nope")

    def test_threshold(self):
        """Threshold should trigger only above the configured size."""
        archiver = ContextArchiver(warn_threshold_mb=1)
        assert not archiver.exceeds_threshold(BYTES_PER_MB)
        assert archiver.exceeds_threshold(BYTES_PER_MB + 1)

    def test_zero_threshold_disables(self):
        """A zero threshold should never warn."""
        assert not ContextArchiver(warn_threshold_mb=0).exceeds_threshold(10**12)
