"""
Unit tests for seed definition loading.
"""

import pytest

from toolhub.catalog_sync.errors import SeedError
from toolhub.catalog_sync.store.seed import load_seed, parse_seed


class TestParseSeed:
    """Tests for parse_seed."""

    def test_sections_map_to_kinds(self):
        records = parse_seed(
            {
                "version": 1,
                "tools": [{"id": "top_customers", "query": "SELECT 1", "author": "alice"}],
                "functions": [{"id": "revenue", "params": ["start", "end"]}],
            }
        )

        assert [(r.record_id, r.kind) for r in records] == [
            ("top_customers", "tool"),
            ("revenue", "function"),
        ]
        tool = records[0]
        assert tool.payload == {"query": "SELECT 1"}
        assert tool.author == "alice"
        assert tool.version == 0
        assert records[1].author == "seed"

    def test_missing_sections_are_empty(self):
        assert parse_seed({"version": 1}) == []

    def test_entry_without_id(self):
        with pytest.raises(SeedError, match="needs an 'id'"):
            parse_seed({"tools": [{"query": "SELECT 1"}]})

    def test_duplicate_ids_across_sections(self):
        with pytest.raises(SeedError, match="Duplicate"):
            parse_seed({"tools": [{"id": "x"}], "functions": [{"id": "x"}]})

    def test_section_must_be_list(self):
        with pytest.raises(SeedError, match="must be a list"):
            parse_seed({"tools": {"id": "x"}})

    def test_document_must_be_mapping(self):
        with pytest.raises(SeedError):
            parse_seed(["tools"])


class TestLoadSeed:
    """Tests for load_seed."""

    def test_load_yaml_file(self, tmp_path):
        path = tmp_path / "seed.yaml"
        path.write_text(
            "tools:\n"
            "  - id: top_customers\n"
            "    description: Top customers by revenue\n"
        )

        records = load_seed(path)

        assert len(records) == 1
        assert records[0].payload == {"description": "Top customers by revenue"}

    def test_empty_file(self, tmp_path):
        path = tmp_path / "seed.yaml"
        path.write_text("")

        assert load_seed(path) == []

    def test_missing_file(self, tmp_path):
        with pytest.raises(SeedError, match="Cannot read"):
            load_seed(tmp_path / "absent.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "seed.yaml"
        path.write_text("tools: [ {id: ")

        with pytest.raises(SeedError, match="Invalid YAML"):
            load_seed(path)
