"""Tests for capture folder retention."""

from __future__ import annotations

from live_assist.artifacts import ArtifactStore


class TestArtifactStore:
    def test_keeps_newest_sessions(self, tmp_path):
        store = ArtifactStore(tmp_path, keep=3)

        created = [store.new_session_folder() for _ in range(7)]

        remaining = store.sessions()
        assert len(remaining) == 3
        assert remaining[-1] == created[-1]
        assert all(folder.exists() for folder in created[-3:])
        assert not created[0].exists()

    def test_ignores_foreign_folders(self, tmp_path):
        (tmp_path / "notes").mkdir()
        store = ArtifactStore(tmp_path, keep=1)

        store.new_session_folder()
        store.new_session_folder()

        assert (tmp_path / "notes").is_dir()
        assert len(store.sessions()) == 1

    def test_keep_has_a_floor(self, tmp_path):
        assert ArtifactStore(tmp_path, keep=0).keep == 1

    def test_missing_root_has_no_sessions(self, tmp_path):
        assert ArtifactStore(tmp_path / "absent").sessions() == []

    def test_preserved_folder_survives_pruning(self, tmp_path):
        store = ArtifactStore(tmp_path, keep=1)
        referenced = store.new_session_folder()

        newest = store.new_session_folder(preserve=[referenced])
        store.new_session_folder(preserve=[referenced])

        assert referenced.exists()
        assert not newest.exists()
        assert len(store.sessions()) == 2
