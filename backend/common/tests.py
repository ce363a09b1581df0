import math

from django.test import SimpleTestCase

from common.utils.geo import (
    EARTH_RADIUS_KM,
    InvalidCoordinateError,
    Point,
    bounding_box,
    distance_km,
    initial_bearing,
    longitude_ranges,
    normalize_heading,
    shortest_heading_delta,
    validate_heading,
    validate_point,
    within_radius,
)

ONE_DEGREE_KM = EARTH_RADIUS_KM * math.pi / 180.0


class DistanceTests(SimpleTestCase):
    def test_one_degree_of_latitude(self):
        self.assertAlmostEqual(distance_km((0.0, 10.0), (1.0, 10.0)), ONE_DEGREE_KM, places=6)

    def test_one_degree_of_longitude_on_equator(self):
        self.assertAlmostEqual(distance_km((0.0, 0.0), (0.0, 1.0)), ONE_DEGREE_KM, places=6)

    def test_paris_to_london(self):
        km = distance_km(Point(48.8566, 2.3522), Point(51.5074, -0.1278))
        self.assertAlmostEqual(km, 343.5, delta=1.0)

    def test_symmetric_and_zero_for_same_point(self):
        a, b = (28.6139, 77.2090), (28.5245, 77.1855)
        self.assertEqual(distance_km(a, b), distance_km(b, a))
        self.assertEqual(distance_km(a, a), 0.0)

    def test_antipodal_points(self):
        self.assertAlmostEqual(distance_km((0.0, 0.0), (0.0, 180.0)), math.pi * EARTH_RADIUS_KM, places=6)

    def test_within_radius_is_inclusive(self):
        center = (0.0, 0.0)
        point = (1.0, 0.0)
        exact = distance_km(center, point)
        self.assertTrue(within_radius(center, point, exact))
        self.assertFalse(within_radius(center, point, exact - 1e-6))


class CoordinateValidationTests(SimpleTestCase):
    def test_rejects_nan_and_out_of_range(self):
        for bad in [(float("nan"), 0.0), (0.0, float("inf")), (90.1, 0.0), (0.0, -180.5), ("x", 1), (1.0,)]:
            with self.subTest(point=bad):
                with self.assertRaises(InvalidCoordinateError):
                    validate_point(bad)

    def test_distance_rejects_invalid_coordinate(self):
        with self.assertRaises(InvalidCoordinateError):
            distance_km((float("nan"), 0.0), (0.0, 0.0))

    def test_invalid_coordinate_is_a_value_error(self):
        self.assertTrue(issubclass(InvalidCoordinateError, ValueError))

    def test_heading_rejects_nan(self):
        with self.assertRaises(InvalidCoordinateError):
            validate_heading(float("nan"))

    def test_coerces_to_point(self):
        self.assertEqual(validate_point(("12.5", 3)), Point(12.5, 3.0))


class HeadingTests(SimpleTestCase):
    def test_examples(self):
        self.assertEqual(shortest_heading_delta(350, 10), 20.0)
        self.assertEqual(shortest_heading_delta(10, 350), -20.0)
        self.assertEqual(shortest_heading_delta(0, 180), 180.0)
        self.assertEqual(shortest_heading_delta(180, 0), 180.0)
        self.assertEqual(shortest_heading_delta(90, 90), 0.0)

    def test_wrap_around_property(self):
        for from_deg in range(0, 360, 7):
            for to_deg in range(0, 360, 11):
                delta = shortest_heading_delta(from_deg, to_deg)
                self.assertLessEqual(abs(delta), 180.0)
                self.assertGreater(delta, -180.0)
                self.assertEqual(normalize_heading(from_deg + delta), to_deg)

    def test_wrap_around_property_fractional(self):
        for from_deg, to_deg in [(359.5, 0.25), (0.1, 359.9), (123.456, 303.456), (270.75, 89.5)]:
            delta = shortest_heading_delta(from_deg, to_deg)
            self.assertLessEqual(abs(delta), 180.0)
            self.assertAlmostEqual(normalize_heading(from_deg + delta), to_deg, places=9)

    def test_normalize_heading(self):
        self.assertEqual(normalize_heading(360.0), 0.0)
        self.assertEqual(normalize_heading(-90.0), 270.0)
        self.assertEqual(normalize_heading(725.0), 5.0)
        self.assertLess(normalize_heading(-1e-15), 360.0)

    def test_initial_bearing_cardinal_directions(self):
        self.assertAlmostEqual(initial_bearing((0.0, 0.0), (1.0, 0.0)), 0.0, places=6)
        self.assertAlmostEqual(initial_bearing((0.0, 0.0), (0.0, 1.0)), 90.0, places=6)
        self.assertAlmostEqual(initial_bearing((0.0, 0.0), (-1.0, 0.0)), 180.0, places=6)
        self.assertAlmostEqual(initial_bearing((0.0, 0.0), (0.0, -1.0)), 270.0, places=6)


class BoundingBoxTests(SimpleTestCase):
    def test_box_contains_circle_edge(self):
        center = Point(28.6139, 77.2090)
        min_lat, max_lat, min_lng, max_lng = bounding_box(center, 5.0)
        self.assertAlmostEqual(distance_km(center, (max_lat, center.lng)), 5.0, places=6)
        self.assertLess(min_lat, center.lat)
        self.assertLess(min_lng, center.lng)
        self.assertGreater(max_lng, center.lng)

    def test_box_at_pole_spans_all_longitudes(self):
        _, max_lat, min_lng, max_lng = bounding_box((90.0, 0.0), 10.0)
        self.assertEqual(max_lat, 90.0)
        self.assertEqual((min_lng, max_lng), (-180.0, 180.0))

    def test_longitude_ranges_inside_the_map(self):
        ranges = longitude_ranges((28.6139, 77.2090), 5.0)
        _, _, min_lng, max_lng = bounding_box((28.6139, 77.2090), 5.0)
        self.assertEqual(ranges, [(min_lng, max_lng)])

    def test_longitude_ranges_split_at_antimeridian(self):
        east, west = longitude_ranges((0.0, 179.99), 5.0)
        self.assertLess(east[0], 179.99)
        self.assertEqual(east[1], 180.0)
        self.assertEqual(west[0], -180.0)
        self.assertGreater(west[1], -179.99)

        far_east, near = longitude_ranges((0.0, -179.99), 5.0)
        self.assertGreater(far_east[0], 179.9)
        self.assertEqual(far_east[1], 180.0)
        self.assertEqual(near[0], -180.0)

    def test_longitude_ranges_at_pole(self):
        self.assertEqual(longitude_ranges((90.0, 10.0), 1.0), [(-180.0, 180.0)])
