import unittest
from unittest.mock import MagicMock, patch

from models.experiments import ExperimentStatus
from services.assignment import (
    SPLIT_TOLERANCE,
    assign_user,
    choose_variant,
    get_or_create_assignment,
    validate_experiment,
    variant_shares,
)
from services.errors import ConcurrencyConflictError, InvalidStateError, ValidationError
from tests.factories import make_experiment


class TestVariantShares(unittest.TestCase):

    def test_control_gets_remainder_of_split(self):
        experiment = make_experiment(traffic_split_percent=30)
        shares = {v.id: share for v, share in variant_shares(experiment)}
        self.assertEqual(shares, {"control": 70.0, "treatment": 30.0})

    def test_treatments_share_split_evenly(self):
        experiment = make_experiment(traffic_split_percent=60, extra_treatments=2)
        shares = [share for _, share in variant_shares(experiment)]
        self.assertEqual(shares[0], 40.0)
        for share in shares[1:]:
            self.assertAlmostEqual(share, 20.0)
        self.assertLess(abs(sum(shares) - 100), SPLIT_TOLERANCE)

    def test_explicit_percentages_win(self):
        experiment = make_experiment()
        experiment.variants[0].traffic_percent = 80
        experiment.variants[1].traffic_percent = 20
        shares = [share for _, share in variant_shares(experiment)]
        self.assertEqual(shares, [80, 20])

    def test_explicit_percentages_must_sum_to_100(self):
        experiment = make_experiment()
        experiment.variants[0].traffic_percent = 60
        experiment.variants[1].traffic_percent = 30
        with self.assertRaisesRegex(ValidationError, "sums to 90"):
            variant_shares(experiment)

    def test_partial_explicit_percentages_rejected(self):
        experiment = make_experiment()
        experiment.variants[1].traffic_percent = 70
        with self.assertRaisesRegex(ValidationError, "1 of 2 variants"):
            variant_shares(experiment)


class TestValidateExperiment(unittest.TestCase):

    def test_no_variants(self):
        experiment = make_experiment()
        experiment.variants = []
        with self.assertRaisesRegex(ValidationError, "no variants"):
            validate_experiment(experiment)

    def test_no_control(self):
        experiment = make_experiment()
        experiment.variants[0].is_control = False
        with self.assertRaisesRegex(ValidationError, "exactly one control"):
            validate_experiment(experiment)

    def test_two_controls(self):
        experiment = make_experiment()
        experiment.variants[1].is_control = True
        with self.assertRaisesRegex(ValidationError, "found 2"):
            validate_experiment(experiment)

    def test_duplicate_ids(self):
        experiment = make_experiment()
        experiment.variants[1].id = "control"
        with self.assertRaisesRegex(ValidationError, "duplicate"):
            validate_experiment(experiment)


class TestChooseVariant(unittest.TestCase):

    def test_walks_cumulative_shares(self):
        experiment = make_experiment(traffic_split_percent=60, extra_treatments=1)
        # control 40, treatment 30, treatment-2 30
        self.assertEqual(choose_variant(experiment, 10).id, "control")
        self.assertEqual(choose_variant(experiment, 40).id, "control")
        self.assertEqual(choose_variant(experiment, 45).id, "treatment")
        self.assertEqual(choose_variant(experiment, 75).id, "treatment-2")

    def test_zero_share_variant_never_chosen(self):
        experiment = make_experiment(traffic_split_percent=100)
        self.assertEqual(choose_variant(experiment, 0).id, "treatment")

    def test_uncovered_tail_falls_back_to_control(self):
        experiment = make_experiment()
        experiment.variants[0].traffic_percent = 49.9999999
        experiment.variants[1].traffic_percent = 50
        self.assertEqual(choose_variant(experiment, 99.99999999).id, "control")


class TestAssignUser(unittest.TestCase):

    @patch('services.assignment.random.random', return_value=0.75)
    def test_new_user_recorded_once(self, mock_random):
        experiment = make_experiment()

        variant_id = assign_user(experiment, "u1")

        self.assertEqual(variant_id, "treatment")
        assigned = experiment.get_variant("treatment").find_user("u1")
        self.assertFalse(assigned.converted)
        self.assertEqual(assigned.events, [])
        mock_random.assert_called_once()

    @patch('services.assignment.random.random')
    def test_idempotent_no_reroll(self, mock_random):
        experiment = make_experiment()
        mock_random.side_effect = [0.2, 0.9]

        first = assign_user(experiment, "u1")
        second = assign_user(experiment, "u1")

        self.assertEqual(first, "control")
        self.assertEqual(second, "control")
        self.assertEqual(mock_random.call_count, 1)
        records = [u for v in experiment.variants for u in v.assigned_users if u.user_id == "u1"]
        self.assertEqual(len(records), 1)

    def test_user_in_at_most_one_variant(self):
        experiment = make_experiment()
        for i in range(200):
            assign_user(experiment, f"user-{i}")
        for i in range(200):
            assign_user(experiment, f"user-{i}")

        seen = [u.user_id for v in experiment.variants for u in v.assigned_users]
        self.assertEqual(len(seen), 200)
        self.assertEqual(len(set(seen)), 200)

    def test_new_assignment_requires_running(self):
        experiment = make_experiment(status=ExperimentStatus.DRAFT)
        with self.assertRaises(InvalidStateError):
            assign_user(experiment, "u1")

    @patch('services.assignment.random.random', return_value=0.1)
    def test_existing_assignment_survives_pause(self, mock_random):
        experiment = make_experiment()
        assign_user(experiment, "u1")
        experiment.status = ExperimentStatus.PAUSED
        self.assertEqual(assign_user(experiment, "u1"), "control")

    def test_invalid_definition_rejected(self):
        experiment = make_experiment()
        experiment.variants[0].is_control = False
        with self.assertRaises(ValidationError):
            assign_user(experiment, "u1")


class TestGetOrCreateAssignment(unittest.TestCase):

    def setUp(self):
        self.repo = MagicMock()

    @patch('services.assignment.random.random', return_value=0.9)
    def test_new_assignment_saved(self, mock_random):
        experiment = make_experiment()
        self.repo.load.return_value = experiment

        result = get_or_create_assignment(self.repo, experiment.id, "u2")

        self.assertEqual(result.variant_id, "treatment")
        self.assertEqual(result.variant_name, "Blue Button")
        self.repo.save.assert_called_once_with(experiment)

    def test_existing_assignment_not_saved(self):
        experiment = make_experiment()
        assign_user(experiment, "u3")
        self.repo.load.return_value = experiment

        result = get_or_create_assignment(self.repo, experiment.id, "u3")

        self.assertEqual(result.user_id, "u3")
        self.repo.save.assert_not_called()

    def test_conflict_is_reported_not_retried(self):
        self.repo.load.return_value = make_experiment()
        self.repo.save.side_effect = ConcurrencyConflictError("stale")

        with self.assertRaises(ConcurrencyConflictError):
            get_or_create_assignment(self.repo, "cta-button-color", "u4")
        self.repo.load.assert_called_once()
