import unittest
from unittest.mock import MagicMock, patch

from config import config
from models.events import EventKind
from models.experiments import AssignedUser, ExperimentStatus
from services.errors import InvalidStateError, NotFoundError, ValidationError
from services.events import apply_event, record_conversion, record_event, record_impression
from tests.factories import NOW, make_experiment


def experiment_with_users(*user_ids, variant_id="treatment", **kwargs):
    experiment = make_experiment(**kwargs)
    variant = experiment.get_variant(variant_id)
    for user_id in user_ids:
        variant.assigned_users.append(AssignedUser(user_id=user_id, assigned_at=NOW))
    return experiment


class TestRecordImpression(unittest.TestCase):

    def test_counts_and_logs(self):
        experiment = experiment_with_users("u1")
        record_impression(experiment, "treatment", "u1", now=NOW)

        variant = experiment.get_variant("treatment")
        self.assertEqual(variant.metrics.impressions, 1)
        self.assertEqual([e.type for e in variant.find_user("u1").events], [EventKind.IMPRESSION])

    def test_unassigned_user_is_caller_error(self):
        experiment = experiment_with_users("u1")
        with self.assertRaisesRegex(NotFoundError, "not assigned"):
            record_impression(experiment, "treatment", "stranger")
        self.assertEqual(experiment.get_variant("treatment").metrics.impressions, 0)

    def test_user_of_another_variant_rejected(self):
        experiment = experiment_with_users("u1", variant_id="control")
        with self.assertRaises(NotFoundError):
            record_impression(experiment, "treatment", "u1")

    def test_unknown_variant(self):
        experiment = experiment_with_users("u1")
        with self.assertRaisesRegex(NotFoundError, "Variant missing"):
            record_impression(experiment, "missing", "u1")


class TestRecordConversion(unittest.TestCase):

    def test_counted_once_per_user(self):
        experiment = experiment_with_users("u1")
        self.assertTrue(record_conversion(experiment, "treatment", "u1", revenue=49.0, now=NOW))
        self.assertFalse(record_conversion(experiment, "treatment", "u1", revenue=49.0, now=NOW))

        variant = experiment.get_variant("treatment")
        self.assertEqual(variant.metrics.conversions, 1)
        self.assertEqual(variant.metrics.revenue, 49.0)

        assigned = variant.find_user("u1")
        self.assertTrue(assigned.converted)
        self.assertEqual(assigned.revenue, 49.0)
        # The repeat is kept in the log, flagged
        self.assertEqual(len(assigned.events), 2)
        self.assertTrue(assigned.events[1].metadata["duplicate"])

    def test_negative_revenue_rejected(self):
        experiment = experiment_with_users("u1")
        with self.assertRaises(ValidationError):
            record_conversion(experiment, "treatment", "u1", revenue=-1)

    def test_unassigned_user(self):
        experiment = experiment_with_users("u1")
        with self.assertRaises(NotFoundError):
            record_conversion(experiment, "treatment", "u2")


class TestApplyEvent(unittest.TestCase):

    def test_derived_metrics_follow_every_event(self):
        experiment = experiment_with_users("u1", "u2", "u3", "u4")
        for user_id in ("u1", "u2", "u3", "u4"):
            apply_event(experiment, "treatment", user_id, EventKind.IMPRESSION, now=NOW)
        apply_event(experiment, "treatment", "u1", EventKind.CONVERSION, revenue=20.0, now=NOW)
        apply_event(experiment, "treatment", "u2", EventKind.BOUNCE, now=NOW)
        apply_event(experiment, "treatment", "u3", EventKind.CLICK, now=NOW)

        metrics = experiment.get_variant("treatment").metrics
        self.assertEqual(metrics.clicks, 1)
        self.assertAlmostEqual(metrics.conversion_rate, 25.0)
        self.assertAlmostEqual(metrics.bounce_rate, 25.0)
        self.assertAlmostEqual(metrics.average_revenue, 5.0)

        apply_event(experiment, "treatment", "u4", EventKind.IMPRESSION, now=NOW)
        self.assertAlmostEqual(experiment.get_variant("treatment").metrics.conversion_rate, 20.0)
        # Metrics held from before the event are refreshed too
        self.assertAlmostEqual(metrics.conversion_rate, 20.0)

    def test_requires_running(self):
        experiment = experiment_with_users("u1", status=ExperimentStatus.PAUSED)
        with self.assertRaises(InvalidStateError):
            apply_event(experiment, "treatment", "u1", EventKind.IMPRESSION)

    def test_event_log_is_capped(self):
        experiment = experiment_with_users("u1")
        with patch.object(config, "event_log_max_length", 3):
            for _ in range(5):
                apply_event(experiment, "treatment", "u1", EventKind.IMPRESSION, now=NOW)
            apply_event(experiment, "treatment", "u1", EventKind.CONVERSION, now=NOW)

        variant = experiment.get_variant("treatment")
        events = variant.find_user("u1").events
        self.assertEqual(variant.metrics.impressions, 5)
        self.assertEqual(len(events), 3)
        self.assertEqual(events[-1].type, EventKind.CONVERSION)


class TestRecordEvent(unittest.TestCase):

    def test_loads_applies_and_saves(self):
        repo = MagicMock()
        experiment = experiment_with_users("u1")
        repo.load.return_value = experiment

        response = record_event(repo, experiment.id, "treatment", "u1", EventKind.IMPRESSION)

        self.assertEqual(response.kind, EventKind.IMPRESSION)
        repo.save.assert_called_once_with(experiment)
        self.assertEqual(experiment.get_variant("treatment").metrics.impressions, 1)

    def test_nothing_saved_on_error(self):
        repo = MagicMock()
        repo.load.return_value = experiment_with_users("u1")

        with self.assertRaises(NotFoundError):
            record_event(repo, "cta-button-color", "treatment", "u9", EventKind.CONVERSION)
        repo.save.assert_not_called()
