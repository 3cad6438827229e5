# ABOUTME: Tests for the sparse data cost table and its binary file format
# ABOUTME: Validates construction checks, lookups, best views and save/load

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from texrecon.data_costs import DataCostTable, save_data_costs, load_data_costs
from texrecon.errors import ValidationError


@pytest.fixture
def table():
    """Three faces, three views; face 2 only visible in view 1."""
    return DataCostTable.from_dense(np.array([
        [0.5, 0.2, np.inf],
        [1.0, 1.0, 0.0],
        [np.inf, 3.0, np.inf],
    ]))


class TestConstruction:
    """Tests for DataCostTable validation."""

    def test_infinite_entries_are_infeasible(self, table):
        assert table.shape == (3, 3)
        assert table.num_entries == 6
        assert list(table.feasible_counts()) == [2, 3, 1]

    def test_entries_sorted_by_face_then_view(self):
        t = DataCostTable(2, 2, faces=[1, 0, 1], views=[1, 1, 0], costs=[3.0, 2.0, 1.0])
        assert list(t.faces) == [0, 1, 1]
        assert list(t.views) == [1, 0, 1]
        assert t.costs.dtype == np.float32

    def test_negative_cost_rejected(self):
        with pytest.raises(ValidationError, match="Negative data cost"):
            DataCostTable(1, 1, [0], [0], [-0.5])

    def test_nan_cost_rejected(self):
        with pytest.raises(ValidationError, match="NaN"):
            DataCostTable(1, 2, [0, 0], [0, 1], [1.0, np.nan])

    def test_out_of_range_view_rejected(self):
        with pytest.raises(ValidationError, match="view index out of range"):
            DataCostTable(1, 2, [0], [2], [1.0])

    def test_duplicate_entry_rejected(self):
        with pytest.raises(ValidationError, match="Duplicate"):
            DataCostTable(1, 2, [0, 0], [1, 1], [1.0, 2.0])

    def test_mismatched_lengths_rejected(self):
        with pytest.raises(ValidationError):
            DataCostTable(2, 2, [0, 1], [0], [1.0, 1.0])

    def test_validation_error_is_value_error(self):
        with pytest.raises(ValueError):
            DataCostTable(1, 1, [0], [0], [-1.0])


class TestQueries:
    """Tests for cost lookups."""

    def test_cost_and_infeasible_lookup(self, table):
        assert table.cost(0, 1) == pytest.approx(0.2)
        assert table.cost(0, 2) == np.inf
        assert table.cost(2, 0) == np.inf

    def test_vectorized_lookup(self, table):
        costs = table.lookup(np.array([0, 1, 2]), np.array([0, 2, 2]))
        assert costs[0] == pytest.approx(0.5)
        assert costs[1] == 0.0
        assert costs[2] == np.inf

    def test_column(self, table):
        col = table.column(1)
        assert col == pytest.approx([0.2, 1.0, 3.0])

    def test_best_views_prefer_lowest_index_on_ties(self, table):
        t = DataCostTable.from_dense(np.array([[1.0, 1.0], [np.inf, np.inf]]))
        assert list(t.best_views()) == [0, -1]
        assert list(table.best_views()) == [1, 2, 1]

    def test_dense_round_trip(self, table):
        assert DataCostTable.from_dense(table.to_dense()) == table


class TestPersistence:
    """Tests for save_data_costs / load_data_costs."""

    def test_save_and_load(self, table, tmp_path):
        path = tmp_path / "costs.spt"
        save_data_costs(table, path)

        loaded = load_data_costs(path)
        assert loaded == table
        assert path.read_bytes().startswith(b"spt\n")

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_data_costs(tmp_path / "missing.spt")

    def test_truncated_payload(self, table, tmp_path):
        path = tmp_path / "costs.spt"
        save_data_costs(table, path)
        path.write_bytes(path.read_bytes()[:-3])

        with pytest.raises(ValidationError, match="payload bytes"):
            load_data_costs(path)

    def test_wrong_face_count(self, table, tmp_path):
        path = tmp_path / "costs.spt"
        save_data_costs(table, path)

        with pytest.raises(ValidationError, match="mesh has 4"):
            load_data_costs(path, expected_faces=4)

    def test_not_a_cost_file(self, tmp_path):
        path = tmp_path / "costs.spt"
        path.write_bytes(b"ply\nformat ascii 1.0\n")
        with pytest.raises(ValidationError, match="Not a data cost file"):
            load_data_costs(path)
