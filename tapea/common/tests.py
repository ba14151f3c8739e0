from unittest import TestCase
from unittest.mock import MagicMock

from tapea.common.utils import ListenerSet, backoff_delay, calculate_distance, calculate_heading


class GeoTests(TestCase):
	def test_distance_between_identical_points_is_zero(self):
		self.assertEqual(calculate_distance(-17.5350, -149.5696, -17.5350, -149.5696), 0)

	def test_distance_one_degree_of_latitude(self):
		distance = calculate_distance(0, 0, 1, 0)
		self.assertAlmostEqual(distance, 111195, delta=50)

	def test_heading_identical_points_is_zero(self):
		self.assertEqual(calculate_heading(-17.5, -149.5, -17.5, -149.5), 0.0)

	def test_heading_cardinal_directions(self):
		self.assertAlmostEqual(calculate_heading(0, 0, 1, 0), 0.0, places=6)
		self.assertAlmostEqual(calculate_heading(0, 0, 0, 1), 90.0, places=6)
		self.assertAlmostEqual(calculate_heading(1, 0, 0, 0), 180.0, places=6)
		self.assertAlmostEqual(calculate_heading(0, 1, 0, 0), 270.0, places=6)

	def test_heading_is_deterministic_and_in_range(self):
		points = [
			(-17.5350, -149.5696, -17.5400, -149.5600),
			(-17.5350, -149.5696, -17.5300, -149.5800),
			(48.8566, 2.3522, 51.5074, -0.1278),
		]
		for lat1, lon1, lat2, lon2 in points:
			heading = calculate_heading(lat1, lon1, lat2, lon2)
			self.assertGreaterEqual(heading, 0.0)
			self.assertLess(heading, 360.0)
			self.assertEqual(heading, calculate_heading(lat1, lon1, lat2, lon2))


class BackoffTests(TestCase):
	def test_doubles_until_cap(self):
		delays = [backoff_delay(attempt, 1.0, 10.0) for attempt in range(1, 7)]
		self.assertEqual(delays, [1.0, 2.0, 4.0, 8.0, 10.0, 10.0])

	def test_no_delay_before_first_attempt(self):
		self.assertEqual(backoff_delay(0, 1.0, 10.0), 0.0)

	def test_huge_attempt_counts_stay_capped(self):
		self.assertEqual(backoff_delay(10_000, 0.5, 4.0), 4.0)


class ListenerSetTests(TestCase):
	def test_unsubscribe_stops_notifications(self):
		listeners = ListenerSet()
		callback = MagicMock()
		unsubscribe = listeners.add(callback)

		listeners.notify("first")
		unsubscribe()
		listeners.notify("second")

		callback.assert_called_once_with("first")
		self.assertEqual(len(listeners), 0)

	def test_failing_listener_does_not_block_others(self):
		listeners = ListenerSet()
		broken = MagicMock(side_effect=RuntimeError("boom"))
		healthy = MagicMock()
		listeners.add(broken)
		listeners.add(healthy)

		with self.assertLogs("tapea.common.utils.listeners", level="ERROR"):
			listeners.notify(1)

		healthy.assert_called_once_with(1)
