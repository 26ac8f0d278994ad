"""
Unit tests for the merge/conflict resolver.

Tests cover:
- Classification of every record case
- Conflict policies
- Output guarantees (one record per id, conflicts iff double write)
- Idempotency
"""

from dataclasses import replace

import pytest

from toolhub.catalog_sync.store.catalog_store import CatalogRecord
from toolhub.catalog_sync.sync.merge import (
    ConflictPolicy,
    MergeOutcome,
    MergeResolver,
)


def make_record(record_id, version, base=None, query="SELECT 1", updated_at=1000, author="user:a"):
    return CatalogRecord(
        record_id=record_id,
        kind="tool",
        payload={"query": query},
        author=author,
        version=version,
        updated_at=updated_at,
        base_version=base,
    )


def remote_record(record_id, version, query="SELECT 1", updated_at=1000):
    return make_record(record_id, version, base=None, query=query, updated_at=updated_at)


class TestMergeClassification:
    """Per-record classification."""

    @pytest.fixture
    def resolver(self):
        return MergeResolver(clock=lambda: 1700000000.0)

    def test_remote_only_adopted(self, resolver):
        result = resolver.merge({"r1": remote_record("r1", 3)}, {})

        assert result.records["r1"].version == 3
        assert result.outcomes["r1"] == MergeOutcome.REMOTE_WINS
        assert result.conflicts == []
        assert result.needs_upload is False

    def test_local_only_adopted(self, resolver):
        result = resolver.merge({}, {"r1": make_record("r1", 1)})

        assert result.records["r1"].version == 1
        assert result.records["r1"].base_version is None
        assert result.outcomes["r1"] == MergeOutcome.LOCAL_WINS
        assert result.needs_upload is True

    def test_unchanged_both_sides_is_clean(self, resolver):
        result = resolver.merge(
            {"r1": remote_record("r1", 2)},
            {"r1": make_record("r1", 2, base=2)},
        )

        assert result.outcomes["r1"] == MergeOutcome.CLEAN
        assert result.needs_upload is False

    def test_stale_local_fast_forwards_to_remote(self, resolver):
        """Instance holding v1 adopts the uploaded v2 without conflict."""
        result = resolver.merge(
            {"r1": remote_record("r1", 2, query="SELECT 2")},
            {"r1": make_record("r1", 1, base=1)},
        )

        assert result.outcomes["r1"] == MergeOutcome.REMOTE_WINS
        assert result.records["r1"].version == 2
        assert result.records["r1"].payload == {"query": "SELECT 2"}
        assert result.conflicts == []

    def test_local_change_wins_over_unchanged_remote(self, resolver):
        result = resolver.merge(
            {"r1": remote_record("r1", 1)},
            {"r1": make_record("r1", 2, base=1, query="SELECT 2")},
        )

        assert result.outcomes["r1"] == MergeOutcome.LOCAL_WINS
        assert result.records["r1"].version == 2
        assert result.records["r1"].payload == {"query": "SELECT 2"}
        assert result.needs_upload is True

    def test_local_win_version_stays_above_remote(self, resolver):
        """Never-synced local record version is bumped above the remote counter."""
        result = resolver.merge(
            {"r1": remote_record("r1", 5)},
            {"r1": make_record("r1", 6, base=5, query="SELECT 9")},
        )
        assert result.records["r1"].version > 5

    def test_double_write_is_conflict_remote_wins(self, resolver):
        local = make_record("r1", 2, base=1, query="SELECT 'local'")
        remote = remote_record("r1", 2, query="SELECT 'remote'")

        result = resolver.merge({"r1": remote}, {"r1": local})

        assert result.outcomes["r1"] == MergeOutcome.CONFLICT
        assert result.records["r1"].payload == {"query": "SELECT 'remote'"}
        assert len(result.conflicts) == 1

        conflict = result.conflicts[0]
        assert conflict.record_id == "r1"
        assert conflict.base_version == 1
        assert conflict.resolved_with == "remote"
        assert conflict.local.payload == {"query": "SELECT 'local'"}
        assert conflict.remote.payload == {"query": "SELECT 'remote'"}
        assert conflict.detected_at == 1700000000000
        assert result.needs_upload is False

    def test_convergent_edit_is_clean(self, resolver):
        result = resolver.merge(
            {"r1": remote_record("r1", 3, query="SELECT 2")},
            {"r1": make_record("r1", 2, base=1, query="SELECT 2")},
        )

        assert result.outcomes["r1"] == MergeOutcome.CLEAN
        assert result.conflicts == []
        assert result.records["r1"].version == 3

    def test_both_created_independently_conflicts(self, resolver):
        result = resolver.merge(
            {"r1": remote_record("r1", 1, query="SELECT 'a'")},
            {"r1": make_record("r1", 1, base=None, query="SELECT 'b'")},
        )

        assert result.outcomes["r1"] == MergeOutcome.CONFLICT
        assert result.conflicts[0].base_version is None

    def test_remote_adopted_lists_remote_values_taken(self, resolver):
        result = resolver.merge(
            {
                "stale": remote_record("stale", 2),
                "double": remote_record("double", 2, query="SELECT 'remote'"),
                "same": remote_record("same", 1),
            },
            {
                "stale": make_record("stale", 1, base=1),
                "double": make_record("double", 2, base=1, query="SELECT 'local'"),
                "same": make_record("same", 1, base=1),
                "mine": make_record("mine", 1),
            },
        )

        assert result.remote_adopted() == {"stale", "double"}

    def test_remote_adopted_excludes_local_wins_conflicts(self):
        resolver = MergeResolver(ConflictPolicy.LOCAL_WINS)
        result = resolver.merge(
            {"r1": remote_record("r1", 2, query="SELECT 'remote'")},
            {"r1": make_record("r1", 2, base=1, query="SELECT 'local'")},
        )

        assert result.conflicts[0].resolved_with == "local"
        assert result.remote_adopted() == set()


class TestConflictPolicies:
    """Tie-break policies for double writes."""

    local = make_record("r1", 2, base=1, query="SELECT 'local'", updated_at=2000)
    remote = remote_record("r1", 3, query="SELECT 'remote'", updated_at=1500)

    def test_local_wins_policy(self):
        result = MergeResolver(ConflictPolicy.LOCAL_WINS).merge(
            {"r1": self.remote}, {"r1": self.local}
        )

        merged = result.records["r1"]
        assert merged.payload == {"query": "SELECT 'local'"}
        assert merged.version == 4
        assert result.conflicts[0].resolved_with == "local"
        assert result.needs_upload is True

    def test_newest_wins_prefers_newer_local(self):
        result = MergeResolver(ConflictPolicy.NEWEST_WINS).merge(
            {"r1": self.remote}, {"r1": self.local}
        )
        assert result.records["r1"].payload == {"query": "SELECT 'local'"}
        assert result.conflicts[0].resolved_with == "local"

    def test_newest_wins_tie_goes_to_remote(self):
        local = replace(self.local, updated_at=1500)
        result = MergeResolver(ConflictPolicy.NEWEST_WINS).merge(
            {"r1": self.remote}, {"r1": local}
        )
        assert result.records["r1"].payload == {"query": "SELECT 'remote'"}
        assert result.conflicts[0].resolved_with == "remote"

    def test_conflict_recorded_under_every_policy(self):
        for policy in ConflictPolicy:
            result = MergeResolver(policy).merge({"r1": self.remote}, {"r1": self.local})
            assert len(result.conflicts) == 1


class TestMergeGuarantees:
    """Output guarantees."""

    def test_one_record_per_id_and_summary(self):
        remote = {
            "a": remote_record("a", 1),
            "b": remote_record("b", 2, query="SELECT 'b2'"),
            "c": remote_record("c", 2, query="SELECT 'c-remote'"),
        }
        local = {
            "b": make_record("b", 1, base=1),
            "c": make_record("c", 2, base=1, query="SELECT 'c-local'"),
            "d": make_record("d", 1),
        }

        result = MergeResolver().merge(remote, local)

        assert sorted(result.records) == ["a", "b", "c", "d"]
        assert result.summary() == {
            "clean": 0,
            "remote_wins": 2,
            "local_wins": 1,
            "conflict": 1,
        }
        assert [c.record_id for c in result.conflicts] == ["c"]

    def test_merge_is_idempotent(self):
        """Re-merging a published result with no new local changes changes nothing."""
        resolver = MergeResolver()
        remote = {
            "a": remote_record("a", 2),
            "b": remote_record("b", 4, query="SELECT 'b'"),
        }
        first = resolver.merge(remote, {"a": make_record("a", 1, base=1)})

        # Local state after publish: every merged record is clean
        published = {
            rid: replace(r, base_version=r.version) for rid, r in first.records.items()
        }
        second = resolver.merge(remote, published)

        assert {rid: r.to_dict() for rid, r in second.records.items()} == {
            rid: r.to_dict() for rid, r in first.records.items()
        }
        assert second.conflicts == []
        assert second.needs_upload is False
        assert all(o == MergeOutcome.CLEAN for o in second.outcomes.values())
