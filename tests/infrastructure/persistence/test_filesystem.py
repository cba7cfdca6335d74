"""Tests for FilesystemVersionStore - persistent version storage."""

import json

import pytest

from archflow.domain.exceptions import NotFoundError
from archflow.domain.models import Stage
from archflow.infrastructure.persistence.filesystem import FilesystemVersionStore
from conftest import make_element


@pytest.fixture
def fs_store(tmp_path):  # noqa: ANN001
    """Create a FilesystemVersionStore in a temporary directory."""
    return FilesystemVersionStore(tmp_path / "versions")


def _commit_root(store: FilesystemVersionStore, design_id: str = "design-1"):
    return store.commit(
        None,
        {"sketch": "s3://plan.png", "elements": [make_element("w1")]},
        "user:alice",
        stage=Stage.ANALYZED,
        design_id=design_id,
    )


class TestFilesystemVersionStoreInit:
    """Tests for FilesystemVersionStore initialization."""

    def test_init_creates_directories(self, tmp_path) -> None:  # noqa: ANN001
        """Initialization creates base and objects directories."""
        FilesystemVersionStore(tmp_path / "versions")

        assert (tmp_path / "versions").is_dir()
        assert (tmp_path / "versions" / "objects").is_dir()

    def test_empty_store(self, fs_store) -> None:
        assert fs_store.design_ids() == []
        assert fs_store.history("design-1") == []


class TestFilesystemVersionStoreCommit:
    """Tests for writing versions to disk."""

    def test_object_written_under_prefix(self, fs_store, tmp_path) -> None:  # noqa: ANN001
        version = _commit_root(fs_store)

        path = tmp_path / "versions" / "objects" / version.version_id[:2]
        with open(path / f"{version.version_id}.json") as f:
            data = json.load(f)

        assert data["content_hash"] == version.content_hash
        assert data["stage"] == "analyzed"
        assert data["payload"]["elements"][0]["id"] == "w1"

    def test_index_updated(self, fs_store, tmp_path) -> None:  # noqa: ANN001
        root = _commit_root(fs_store)
        child = fs_store.commit(
            root.version_id, {"elements": []}, "user:bob", stage=Stage.REFINING
        )

        with open(tmp_path / "versions" / "index.json") as f:
            index = json.load(f)

        assert index["designs"]["design-1"] == [root.version_id, child.version_id]
        assert index["children"][root.version_id] == [child.version_id]
        assert index["versions"][child.version_id]["parent_id"] == root.version_id
        assert not (tmp_path / "versions" / "index.tmp").exists()

    def test_unknown_version(self, fs_store) -> None:
        with pytest.raises(NotFoundError):
            fs_store.get("missing")


class TestFilesystemVersionStoreReload:
    """A fresh store over the same directory sees everything committed."""

    def test_reload_round_trip(self, tmp_path) -> None:  # noqa: ANN001
        first = FilesystemVersionStore(tmp_path / "versions")
        root = _commit_root(first)
        merged = first.commit(
            root.version_id,
            {"elements": [make_element("w1", label="North wall")]},
            "user:bob",
            stage=Stage.REFINING,
            note="merged",
            merge_parent_id=root.version_id,
        )

        second = FilesystemVersionStore(tmp_path / "versions")
        loaded = second.get(merged.version_id)

        assert loaded.content_hash == merged.content_hash
        assert (loaded.parent_id, loaded.merge_parent_id) == (root.version_id, root.version_id)
        assert (loaded.stage, loaded.note) == (Stage.REFINING, "merged")
        assert loaded.payload["elements"][0]["label"] == "North wall"
        assert second.design_ids() == ["design-1"]
        assert [v.version_id for v in second.history("design-1")] == [
            root.version_id,
            merged.version_id,
        ]

    def test_sequence_continues_after_reload(self, tmp_path) -> None:  # noqa: ANN001
        first = FilesystemVersionStore(tmp_path / "versions")
        root = _commit_root(first)

        second = FilesystemVersionStore(tmp_path / "versions")
        other = _commit_root(second, design_id="design-2")

        assert other.sequence == root.sequence + 1
        assert sorted(second.design_ids()) == ["design-1", "design-2"]

    def test_diff_across_reload(self, tmp_path) -> None:  # noqa: ANN001
        first = FilesystemVersionStore(tmp_path / "versions")
        root = _commit_root(first)
        child = first.commit(
            root.version_id,
            {"sketch": "s3://plan.png", "elements": [make_element("w1"), make_element("w2")]},
            "user:bob",
            stage=Stage.REFINING,
        )

        delta = FilesystemVersionStore(tmp_path / "versions").diff(
            root.version_id, child.version_id
        )

        assert delta.added == ("w2",)
        assert delta.modified == ()


class TestFilesystemVersionStoreSharedDirectory:
    """Two stores opened on one directory, as two CLI runs would be."""

    def test_interleaved_commits_keep_both(self, tmp_path) -> None:  # noqa: ANN001
        first = FilesystemVersionStore(tmp_path / "versions")
        second = FilesystemVersionStore(tmp_path / "versions")

        a = _commit_root(first, design_id="design-1")
        b = _commit_root(second, design_id="design-2")
        c = first.commit(
            a.version_id,
            {"sketch": "s3://plan.png", "elements": [make_element("w1", label="North")]},
            "user:alice",
            stage=Stage.REFINING,
        )

        assert [a.sequence, b.sequence, c.sequence] == [0, 1, 2]
        third = FilesystemVersionStore(tmp_path / "versions")
        assert sorted(third.design_ids()) == ["design-1", "design-2"]
        assert [v.version_id for v in third.history("design-1")] == [
            a.version_id,
            c.version_id,
        ]
        assert third.get(b.version_id).design_id == "design-2"

    def test_sees_versions_committed_elsewhere(self, tmp_path) -> None:  # noqa: ANN001
        reader = FilesystemVersionStore(tmp_path / "versions")
        writer = FilesystemVersionStore(tmp_path / "versions")

        root = _commit_root(writer)

        assert reader.get(root.version_id).version_id == root.version_id
        assert reader.design_ids() == ["design-1"]
        assert [v.version_id for v in reader.history("design-1")] == [root.version_id]
