"""
Tests for artifacts passed between jobs.
"""

import pytest

from flowci.artifacts import ArtifactStore
from flowci.errors import ArtifactError


@pytest.fixture
def store(tmp_path):
    return ArtifactStore(tmp_path / "artifacts", "run-1")


class TestArtifactStore:
    """Tests for upload/download."""

    def test_upload_and_download(self, store, workspace, tmp_path):
        (workspace / "dist").mkdir()
        (workspace / "dist" / "pkg.whl").write_text("wheel")
        (workspace / "report.txt").write_text("ok")

        stored = store.upload("build", ["dist", "report.txt"], workspace)
        assert stored == ["dist/pkg.whl", "report.txt"]
        assert store.list() == ["build"]

        dest = tmp_path / "other"
        restored = store.download("build", dest)
        assert sorted(restored) == ["dist/pkg.whl", "report.txt"]
        assert (dest / "dist" / "pkg.whl").read_text() == "wheel"

    def test_globs(self, store, workspace):
        (workspace / "logs").mkdir()
        (workspace / "logs" / "a.log").write_text("a")
        (workspace / "logs" / "b.txt").write_text("b")
        assert store.upload("logs", ["logs/*.log"], workspace) == ["logs/a.log"]

    def test_upload_merges(self, store, workspace, tmp_path):
        (workspace / "a.txt").write_text("a")
        (workspace / "b.txt").write_text("b")
        store.upload("out", ["a.txt"], workspace)
        store.upload("out", ["b.txt"], workspace)
        assert sorted(store.download("out", tmp_path / "d")) == ["a.txt", "b.txt"]

    def test_nothing_matches(self, store, workspace):
        with pytest.raises(ArtifactError, match="No files found"):
            store.upload("x", ["missing/*"], workspace)

    def test_outside_workspace(self, store, workspace, tmp_path):
        (tmp_path / "secret.txt").write_text("x")
        with pytest.raises(ArtifactError, match="outside the workspace"):
            store.upload("x", ["../secret.txt"], workspace)

    def test_missing_artifact(self, store, tmp_path):
        with pytest.raises(ArtifactError, match="not found"):
            store.download("nope", tmp_path / "d")

    def test_invalid_name(self, store, workspace):
        with pytest.raises(ArtifactError, match="Invalid artifact name"):
            store.upload("../x", ["a"], workspace)
