import sys
import unittest
from datetime import date
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from landings import (
    Coverage,
    Facility,
    FlightRow,
    Frequency,
    MatchCounts,
    MatchOptions,
    coverage,
    coverage_by_region,
    first_visit_dates,
    frequency_table,
    most_visited_facility,
    most_visited_region,
    parse_flight_date,
    plan_trip,
    search_facilities,
    sort_facilities,
)

PAO = Facility(id="PAO", name="Palo Alto", city="Palo Alto", county="Santa Clara",
               state="CA", latitude=37.4611, longitude=-122.1150,
               towered=True, longest_runway_ft=2443, surface_category="paved")
SQL = Facility(id="SQL", name="San Carlos", city="San Carlos", county="San Mateo",
               state="CA", latitude=37.5119, longitude=-122.2495,
               towered=True, longest_runway_ft=2600, surface_category="paved")
HAF = Facility(id="HAF", name="Half Moon Bay", city="Half Moon Bay",
               county="San Mateo", state="CA", latitude=37.5134,
               longitude=-122.5011, towered=False, longest_runway_ft=5000)
LVK = Facility(id="LVK", name="Livermore", city="Livermore", county="Alameda",
               state="CA", latitude=37.6934, longitude=-121.8203,
               towered=True, longest_runway_ft=5253, surface_category="paved")
SFO = Facility(id="SFO", name="San Francisco Intl", city="San Francisco",
               state="CA", latitude=37.6188, longitude=-122.3754,
               towered=True, longest_runway_ft=11870, surface_category="paved")
MRY = Facility(id="MRY", name="Monterey", city="Monterey", state="CA",
               latitude=36.587, longitude=-121.843, longest_runway_ft=7616,
               surface_category="paved")
NOL = Facility(id="NOL", name="Nowhere", state="CA", longest_runway_ft=3000)
BFI = Facility(id="BFI", name="Boeing Field", city="Seattle", state="WA",
               latitude=47.53, longitude=-122.30)

FACILITIES = [PAO, SQL, HAF, LVK, SFO, MRY, NOL]


def ids(candidates):
    return [c.facility.id for c in candidates]


class CoverageTests(unittest.TestCase):
    def test_ratio(self):
        cov = coverage([PAO, SQL, HAF], {"PAO", "ZZZ"})
        self.assertEqual((cov.total, cov.visited), (3, 1))
        self.assertAlmostEqual(cov.ratio, 1 / 3)

    def test_empty_scope_ratio_is_zero(self):
        self.assertEqual(coverage([], {"PAO"}).ratio, 0.0)

    def test_ratio_bounds(self):
        self.assertEqual(coverage([PAO], {"PAO"}).ratio, 1.0)
        self.assertEqual(coverage([PAO], set()).ratio, 0.0)

    def test_by_region(self):
        regions = coverage_by_region([PAO, SQL, BFI, Facility(id="X", name="X")],
                                     {"PAO", "BFI"})
        self.assertEqual(regions, {"CA": Coverage(total=2, visited=1),
                                   "WA": Coverage(total=1, visited=1)})


class FrequencyViewTests(unittest.TestCase):
    def setUp(self):
        self.frequency = {
            "PAO": Frequency(5, MatchCounts(endpoint_from=3, endpoint_to=2)),
            "SQL": Frequency(2, MatchCounts(endpoint_to=2)),
            "BFI": Frequency(2, MatchCounts(notes_match=2)),
            "HAF": Frequency(0, MatchCounts()),
        }

    def test_frequency_table_order(self):
        self.assertEqual([fid for fid, _ in frequency_table(self.frequency)],
                         ["PAO", "BFI", "SQL"])
        self.assertEqual(len(frequency_table(self.frequency, limit=1)), 1)

    def test_most_visited_facility(self):
        self.assertEqual(most_visited_facility(self.frequency), ("PAO", 5))
        self.assertIsNone(most_visited_facility({}))

    def test_most_visited_region(self):
        by_id = {f.id: f for f in (PAO, SQL, BFI)}
        self.assertEqual(most_visited_region(self.frequency, by_id), ("CA", 7))
        self.assertIsNone(most_visited_region({}, by_id))


class FirstVisitTests(unittest.TestCase):
    def setUp(self):
        self.flights = [
            FlightRow(date="2024-03-01", origin="KPAO", destination="KSQL"),
            FlightRow(date="2024-01-15", origin="HAF", destination="SQL",
                      text_fields=["low pass O69"]),
            FlightRow(date="sometime", origin="PAO", destination="LVK"),
            FlightRow(date="2023-12-31", origin="", destination="",
                      text_fields=["LVK"]),
        ]
        self.ids = {"PAO", "SQL", "HAF", "LVK", "O69"}

    def test_earliest_date_per_facility(self):
        first = first_visit_dates(self.flights, self.ids)
        self.assertEqual(first, {
            "PAO": date(2024, 3, 1),
            "SQL": date(2024, 1, 15),
            "HAF": date(2024, 1, 15),
            "O69": date(2024, 1, 15),
            "LVK": date(2023, 12, 31),
        })

    def test_respects_options(self):
        first = first_visit_dates(
            self.flights, self.ids,
            options=MatchOptions(include_notes=False, arrivals_only=True))
        self.assertEqual(first, {"SQL": date(2024, 1, 15)})

    def test_parse_flight_date(self):
        self.assertEqual(parse_flight_date("2024-01-02"), date(2024, 1, 2))
        self.assertIsNone(parse_flight_date(""))
        self.assertIsNone(parse_flight_date("not a date"))

    def test_relative_date_words_are_not_dates(self):
        for word in ("today", "NOW", " Tomorrow ", "yesterday"):
            self.assertIsNone(parse_flight_date(word), word)
        flights = [FlightRow(date="today", origin="PAO", destination="SQL")]
        self.assertEqual(first_visit_dates(flights, {"PAO", "SQL"}), {})


class PlanTripTests(unittest.TestCase):
    def test_unvisited_within_radius_sorted_by_distance(self):
        candidates = plan_trip("PAO", FACILITIES, {"SFO"}, 25)
        self.assertEqual(ids(candidates), ["SQL", "HAF", "LVK"])
        self.assertAlmostEqual(candidates[0].usable_runway_ft, 1950.0)
        self.assertLess(candidates[0].distance_nm, candidates[1].distance_nm)

    def test_home_id_is_normalized(self):
        self.assertEqual(ids(plan_trip("KPAO", FACILITIES, {"SFO"}, 25)),
                         ["SQL", "HAF", "LVK"])

    def test_min_usable_runway(self):
        self.assertEqual(ids(plan_trip("PAO", FACILITIES, {"SFO"}, 25,
                                       min_runway_ft=2000)),
                         ["HAF", "LVK"])

    def test_tower_filter(self):
        self.assertEqual(ids(plan_trip("PAO", FACILITIES, {"SFO"}, 25,
                                       towered=True)),
                         ["SQL", "LVK"])
        self.assertEqual(ids(plan_trip("PAO", FACILITIES, {"SFO"}, 25,
                                       towered=False)),
                         ["HAF"])

    def test_surface_filter_treats_missing_as_unknown(self):
        self.assertEqual(ids(plan_trip("PAO", FACILITIES, {"SFO"}, 25,
                                       surfaces=["paved"])),
                         ["SQL", "LVK"])
        self.assertEqual(ids(plan_trip("PAO", FACILITIES, {"SFO"}, 25,
                                       surfaces={"unknown"})),
                         ["HAF"])

    def test_unknown_or_unlocated_home(self):
        self.assertEqual(plan_trip("ZZZ", FACILITIES, set(), 100), [])
        self.assertEqual(plan_trip("NOL", FACILITIES, set(), 100), [])

    def test_equal_distance_prefers_longer_runway_then_id(self):
        home = Facility(id="HOM", name="Home", latitude=0.0, longitude=0.0)
        short = Facility(id="AAA", name="Short", latitude=0.0, longitude=0.1,
                         longest_runway_ft=3000)
        long_ = Facility(id="ZZZ", name="Long", latitude=0.0, longitude=-0.1,
                         longest_runway_ft=5000)
        twin = Facility(id="BBB", name="Twin", latitude=0.0, longitude=0.1,
                        longest_runway_ft=3000)
        candidates = plan_trip("HOM", [home, twin, short, long_], set(), 50)
        self.assertEqual(ids(candidates), ["ZZZ", "AAA", "BBB"])


class SearchAndSortTests(unittest.TestCase):
    def test_search_matches_id_name_city_county(self):
        self.assertEqual([f.id for f in search_facilities(FACILITIES, "san mateo")],
                         ["SQL", "HAF"])
        self.assertEqual([f.id for f in search_facilities(FACILITIES, "lvk")],
                         ["LVK"])
        self.assertEqual(len(search_facilities(FACILITIES, "  ")), len(FACILITIES))

    def test_sort(self):
        self.assertEqual([f.id for f in sort_facilities([SQL, HAF, PAO], "name")],
                         ["HAF", "PAO", "SQL"])
        self.assertEqual([f.id for f in sort_facilities([SQL, HAF, PAO])],
                         ["HAF", "PAO", "SQL"])
        with self.assertRaises(ValueError):
            sort_facilities([PAO], "state")


if __name__ == "__main__":
    unittest.main()
