from django.test import SimpleTestCase

from common.utils import (
	bounding_box,
	calculate_distance,
	calculate_distance_km,
	gcj02_to_wgs84,
	is_outside_china,
	wgs84_to_gcj02,
)


class DatumConversionTests(SimpleTestCase):
	def test_points_outside_region_unchanged(self):
		for point in ((48.8566, 2.3522), (-33.8688, 151.2093), (40.7128, -74.0060)):
			self.assertEqual(wgs84_to_gcj02(*point), point)
			self.assertEqual(gcj02_to_wgs84(*point), point)

	def test_region_boundaries(self):
		self.assertFalse(is_outside_china(0.8293, 72.004))
		self.assertFalse(is_outside_china(55.8271, 137.8347))
		self.assertTrue(is_outside_china(0.8292, 100.0))
		self.assertTrue(is_outside_china(30.0, 137.8348))

	def test_offset_inside_region(self):
		latitude, longitude = wgs84_to_gcj02(39.9087, 116.3975)

		shift = calculate_distance(39.9087, 116.3975, latitude, longitude)
		self.assertGreater(shift, 50)
		self.assertLess(shift, 1000)

	def test_inverse_is_close(self):
		gcj = wgs84_to_gcj02(31.2304, 121.4737)
		latitude, longitude = gcj02_to_wgs84(*gcj)

		self.assertAlmostEqual(latitude, 31.2304, delta=0.0002)
		self.assertAlmostEqual(longitude, 121.4737, delta=0.0002)


class DistanceTests(SimpleTestCase):
	def test_same_point(self):
		self.assertEqual(calculate_distance(39.9, 116.4, 39.9, 116.4), 0)

	def test_one_degree_of_latitude(self):
		self.assertAlmostEqual(calculate_distance_km(39.0, 116.4, 40.0, 116.4), 111.2, delta=0.5)
		self.assertAlmostEqual(calculate_distance(39.0, 116.4, 40.0, 116.4), 111195, delta=500)

	def test_bounding_box_contains_radius(self):
		min_lat, max_lat, min_lon, max_lon = bounding_box(39.9, 116.4, 5.0)

		self.assertLess(min_lat, 39.9)
		self.assertGreater(max_lat, 39.9)
		self.assertAlmostEqual(calculate_distance_km(39.9, 116.4, max_lat, 116.4), 5.0, delta=0.05)
		self.assertGreaterEqual(calculate_distance_km(39.9, 116.4, 39.9, max_lon), 4.95)
		self.assertAlmostEqual(max_lon - 116.4, 116.4 - min_lon)
