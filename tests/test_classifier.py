# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.

"""Tests for checksum-based change classification."""

import pytest

from conftest import MemoryStorage, write
from librarian_watch.checksums import checksum_path, compute_file_checksum
from librarian_watch.classifier import ChangeClassifier, ClassifiedChanges, ReindexOutcome


class _BrokenStorage(MemoryStorage):
    async def get_file_checksum(self, path):
        raise ConnectionError("database is locked")


class TestChecksums:
    """Test the checksum format shared with the indexer."""

    def test_checksum_is_16_hex_chars(self):
        digest = compute_file_checksum("hello")
        assert len(digest) == 16
        int(digest, 16)

    def test_str_and_bytes_agree(self, workspace):
        path = write(workspace, "a.py", "print('hi')\n")
        assert checksum_path(path) == compute_file_checksum("print('hi')\n")
        assert compute_file_checksum(b"x") == compute_file_checksum("x")


class TestChangeClassifier:
    """Test the freshness gate."""

    @pytest.mark.asyncio
    async def test_buckets(self, workspace):
        same = write(workspace, "same.py", "a = 1")
        edited = write(workspace, "edited.py", "a = 2")
        fresh = write(workspace, "fresh.py", "a = 3")
        gone = workspace / "gone.py"
        storage = MemoryStorage()
        storage.record(same, "a = 1")
        storage.record(edited, "a = 1")
        storage.record(gone, "a = 0")

        result = await ChangeClassifier(storage).classify(
            [str(same), str(edited), str(fresh), str(gone), str(edited)]
        )

        assert result.unchanged == [str(same)]
        assert result.changed == sorted([str(edited), str(fresh)])
        assert result.deleted == [str(gone)]
        assert result.failed == []
        assert result.to_reindex() == sorted([str(edited), str(fresh), str(gone)])

    @pytest.mark.asyncio
    async def test_missing_path_unknown_to_index_is_unchanged(self, workspace):
        gone = str(workspace / "gone.py")

        result = await ChangeClassifier(MemoryStorage()).classify([gone])

        assert result.unchanged == [gone]
        assert result.is_noop()

    @pytest.mark.asyncio
    async def test_without_storage_missing_path_is_deleted(self, workspace):
        gone = str(workspace / "gone.py")

        assert await ChangeClassifier().classify_path(gone) == ChangeClassifier.DELETED

    @pytest.mark.asyncio
    async def test_without_storage_existing_files_are_changed(self, workspace):
        path = write(workspace, "a.py", "x")

        assert await ChangeClassifier().classify_path(str(path)) == ChangeClassifier.CHANGED

    @pytest.mark.asyncio
    async def test_storage_error_is_transient_failure(self, workspace):
        path = write(workspace, "a.py", "x")

        result = await ChangeClassifier(_BrokenStorage()).classify([str(path)])

        assert result.failed == [str(path)]
        assert result.is_noop()

    @pytest.mark.asyncio
    async def test_empty_input(self):
        result = await ChangeClassifier(MemoryStorage()).classify([])
        assert result == ClassifiedChanges()

    def test_outcome_complete_requires_no_failures(self):
        assert ReindexOutcome().complete
        assert not ReindexOutcome(classified=ClassifiedChanges(failed=["a"])).complete
        assert not ReindexOutcome(ok=False).complete
