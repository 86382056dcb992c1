import unittest
from unittest.mock import MagicMock, patch
from types import SimpleNamespace
from datetime import datetime, timedelta, timezone
from sqlalchemy.exc import OperationalError
from services.assignment import resolve_assignment, is_within_schedule, ASSIGNMENT_VERSION
from services.bucketing import select_weighted_variant, stable_key_for
from services.config_merge import BASELINE_CONFIG
from services.errors import StorageUnavailable
import logging

# Set up logging to capture output during tests
logging.basicConfig(level=logging.INFO)

NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


# --- Plain stand-ins for the ORM rows (the resolver only reads attributes) ---
def make_variant(variant_id, weight, config=None):
    return SimpleNamespace(variant_id=variant_id, variant_name=variant_id.title(), weight=weight, config=config)

def make_experiment(experiment_id, variants, targeting=None, start_at=None, end_at=None):
    return SimpleNamespace(experiment_id=experiment_id, variants=variants, targeting=targeting,
                           start_at=start_at, end_at=end_at)

def make_assignment(experiment_id, variant_id, user_id="user-1", assignment_version=1):
    return SimpleNamespace(experiment_id=experiment_id, variant_id=variant_id, anonymous_user_id=user_id,
                           assignment_version=assignment_version)


# Patch the stores where the resolver imports them; db and cache are plain mocks.
@patch('services.assignment.ExperimentStore')
@patch('services.assignment.AssignmentStore')
class TestResolveAssignment(unittest.TestCase):

    def setUp(self):
        self.mock_db = MagicMock()
        self.mock_cache = MagicMock()
        self.mock_cache.get_assignment.return_value = None
        self.experiment = make_experiment("landing_tab", [
            make_variant("control", 50, {"navigation": {"default_landing_tab": "workouts"}}),
            make_variant("treatment", 50, {"navigation": {"default_landing_tab": "creatures"}}),
        ])
        self.mock_cache.get_running_experiments.return_value = [self.experiment]

    def _expected_variant(self, user_id="user-1"):
        return select_weighted_variant(stable_key_for(user_id, "landing_tab"), self.experiment.variants)

    def test_existing_assignment_is_sticky(self, mock_assignment_store, mock_experiment_store):
        """A cached assignment is returned as is and nothing is written."""
        self.mock_cache.get_assignment.return_value = make_assignment("landing_tab", "treatment")

        result = resolve_assignment(self.mock_db, self.mock_cache, "user-1", now=NOW)

        self.assertEqual([a.variant_id for a in result.assignments], ["treatment"])
        self.assertEqual(result.config["navigation"]["default_landing_tab"], "creatures")
        mock_assignment_store.return_value.insert_if_absent.assert_not_called()
        self.mock_db.commit.assert_not_called()
        mock_experiment_store.return_value.list_running.assert_not_called()

    def test_new_assignment_uses_hash_bucketing(self, mock_assignment_store, mock_experiment_store):
        """Without a stored row the variant comes from the weighted hash and is inserted once."""
        expected = self._expected_variant()
        store = mock_assignment_store.return_value
        store.find_for_user.return_value = {}
        store.insert_if_absent.return_value = {"landing_tab": make_assignment("landing_tab", expected.variant_id)}

        result = resolve_assignment(self.mock_db, self.mock_cache, "user-1", session_id="s-1", now=NOW)

        self.assertEqual(result.assignments[0].variant_id, expected.variant_id)
        self.assertEqual(result.assignment_version, ASSIGNMENT_VERSION)
        rows = store.insert_if_absent.call_args.args[0]
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["variant_id"], expected.variant_id)
        self.assertEqual(rows[0]["context"]["session_id"], "s-1")
        self.mock_db.commit.assert_called_once()
        self.mock_cache.set_assignment.assert_called_once()

    def test_stored_row_wins_a_race(self, mock_assignment_store, mock_experiment_store):
        """If another request inserted first, its variant is returned instead of ours."""
        expected = self._expected_variant()
        other = "control" if expected.variant_id == "treatment" else "treatment"
        store = mock_assignment_store.return_value
        store.find_for_user.return_value = {}
        store.insert_if_absent.return_value = {"landing_tab": make_assignment("landing_tab", other)}

        result = resolve_assignment(self.mock_db, self.mock_cache, "user-1", now=NOW)

        self.assertEqual(result.assignments[0].variant_id, other)

    def test_version_is_max_of_stored_versions(self, mock_assignment_store, mock_experiment_store):
        self.mock_cache.get_assignment.return_value = make_assignment("landing_tab", "control",
                                                                      assignment_version=3)

        result = resolve_assignment(self.mock_db, self.mock_cache, "user-1", now=NOW)

        self.assertEqual(result.assignment_version, 3)

    def test_untargeted_user_gets_baseline(self, mock_assignment_store, mock_experiment_store):
        self.experiment.targeting = {"platform": "ios"}

        result = resolve_assignment(self.mock_db, self.mock_cache, "user-1", platform="android", now=NOW)

        self.assertEqual(result.assignments, [])
        self.assertEqual(result.config, BASELINE_CONFIG)
        mock_assignment_store.return_value.find_for_user.assert_not_called()

    def test_storage_outage_rolls_back(self, mock_assignment_store, mock_experiment_store):
        store = mock_assignment_store.return_value
        store.find_for_user.return_value = {}
        store.insert_if_absent.side_effect = OperationalError("INSERT", {}, Exception("connection refused"))

        with self.assertRaises(StorageUnavailable):
            resolve_assignment(self.mock_db, self.mock_cache, "user-1", now=NOW)

        self.mock_db.rollback.assert_called_once()
        self.mock_db.commit.assert_not_called()

    def test_catalog_is_read_from_db_on_cache_miss(self, mock_assignment_store, mock_experiment_store):
        self.mock_cache.get_running_experiments.return_value = None
        mock_experiment_store.return_value.list_running.return_value = []

        result = resolve_assignment(self.mock_db, self.mock_cache, "user-1", now=NOW)

        self.assertEqual(result.assignments, [])
        self.mock_cache.set_running_experiments.assert_called_once_with([])


class TestSchedule(unittest.TestCase):

    def test_open_bounds(self):
        self.assertTrue(is_within_schedule(make_experiment("e", []), NOW))

    def test_outside_window(self):
        self.assertFalse(is_within_schedule(make_experiment("e", [], start_at=NOW + timedelta(hours=1)), NOW))
        self.assertFalse(is_within_schedule(make_experiment("e", [], end_at=NOW - timedelta(hours=1)), NOW))

    def test_naive_bounds_are_utc(self):
        naive_start = (NOW - timedelta(minutes=1)).replace(tzinfo=None)
        self.assertTrue(is_within_schedule(make_experiment("e", [], start_at=naive_start), NOW))


if __name__ == '__main__':
    unittest.main()
