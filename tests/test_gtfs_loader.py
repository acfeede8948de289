"""Tests for GTFS static data loading."""

import os
import tempfile
import unittest
import sys
from pathlib import Path

# Add src to path so we can import stationboard
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from stationboard.gtfs_loader import GTFSLoader

STOPS_CSV = """stop_id,stop_code,stop_name,stop_desc,stop_lat,stop_lon,zone_id,stop_url,location_type,parent_station
127,127,Times Sq-42 St,,40.755,-73.9871,,,1,
127N,127N,Times Sq-42 St,,40.755,-73.9871,,,0,127
127S,127S,Times Sq-42 St,,40.755,-73.9871,,,0,127
R16,R16,Times Sq-42 St,,40.7548,-73.9868,,,1,
BAD,BAD,Broken Stop,,,-73.9,,,0,
"""

ROUTES_CSV = """route_id,agency_id,route_short_name,route_long_name
1,MTA,1,Broadway - 7 Avenue Local
2,MTA,2,7 Avenue Express
N,MTA,,Broadway Express
"""

STOP_TIMES_CSV = """trip_id,arrival_time,departure_time,stop_id,stop_sequence
AFA25GEN-1038-Sunday-00_020600_1..N03R,03:26:00,03:26:00,127N,1
AFA25GEN-1038-Sunday-00_020700_2..S01R,03:27:00,03:27:00,127S,1
AFA25GEN-1038-Sunday-00_020800_X..S01R,03:28:00,03:28:00,127S,1
"""


class TestGTFSLoader(unittest.TestCase):
    """Test GTFS static data loading."""

    def setUp(self):
        self.loader = GTFSLoader()
        self.loader._load_stops(STOPS_CSV)
        self.loader._load_routes(ROUTES_CSV)

    def test_load_stops_csv(self):
        self.assertIn("127", self.loader.stations)
        self.assertIn("127N", self.loader.stations)
        self.assertNotIn("BAD", self.loader.stations)

        station = self.loader.stations["127"]
        self.assertEqual(station.name, "Times Sq-42 St")
        self.assertAlmostEqual(station.coordinates.latitude, 40.755, places=3)
        self.assertEqual(self.loader.parent_to_children["127"], ["127N", "127S"])

    def test_route_names(self):
        self.assertEqual(self.loader.routes["1"], "1")
        self.assertEqual(self.loader.routes["N"], "Broadway Express")

    def test_stop_times_fill_served_routes(self):
        self.loader._load_stop_times(STOP_TIMES_CSV)

        self.assertEqual(self.loader.get_station("127N").route_ids, ("1",))
        self.assertEqual(self.loader.get_station("127S").route_ids, ("2",))
        # Parent inherits from its platforms; unknown route X is ignored
        self.assertEqual(self.loader.get_station("127").route_ids, ("1", "2"))
        self.assertEqual(self.loader.get_stations_for_route("2"), ["127S"])

    def test_trips_file_takes_precedence(self):
        self.loader._load_trips("route_id,service_id,trip_id\nN,WKD,weekday-1\n")
        self.loader._load_stop_times(
            "trip_id,arrival_time,departure_time,stop_id,stop_sequence\nweekday-1,08:00:00,08:00:00,R16,1\n"
        )
        self.assertEqual(self.loader.get_station("R16").route_ids, ("N",))

    def test_records(self):
        self.loader._load_stop_times(STOP_TIMES_CSV)

        stations = {r["id"]: r for r in self.loader.station_records()}
        self.assertEqual(stations["127"]["coordinates"], {"lat": 40.755, "lon": -73.9871})
        self.assertEqual(stations["127"]["routeIds"], ["1", "2"])
        self.assertIn({"id": "N", "name": "Broadway Express"}, self.loader.route_records())

    def test_find_stations_by_name(self):
        self.assertEqual(len(self.loader.find_stations_by_name("times")), 4)
        self.assertEqual(self.loader.find_stations_by_name("Nowhere"), [])

    def test_get_station_not_found(self):
        with self.assertRaises(ValueError):
            self.loader.get_station("NONEXISTENT")

    def test_clear(self):
        self.loader.clear()
        self.assertEqual(self.loader.stations, {})
        self.assertEqual(self.loader.routes, {})

    def test_load_from_files(self):
        with tempfile.TemporaryDirectory() as tmp:
            paths = {}
            for name, content in (("stops", STOPS_CSV), ("routes", ROUTES_CSV), ("stop_times", STOP_TIMES_CSV)):
                paths[name] = os.path.join(tmp, f"{name}.txt")
                with open(paths[name], "w", encoding="utf-8") as f:
                    f.write(content)

            loader = GTFSLoader()
            loader.load_from_files(paths["stops"], paths["routes"], paths["stop_times"])

        self.assertEqual(len(loader.stations), 4)
        self.assertEqual(loader.get_station("127").route_ids, ("1", "2"))

    def test_stop_times_optional(self):
        with tempfile.TemporaryDirectory() as tmp:
            stops_path = os.path.join(tmp, "stops.txt")
            routes_path = os.path.join(tmp, "routes.txt")
            with open(stops_path, "w", encoding="utf-8") as f:
                f.write(STOPS_CSV)
            with open(routes_path, "w", encoding="utf-8") as f:
                f.write(ROUTES_CSV)

            loader = GTFSLoader()
            loader.load_from_files(stops_path, routes_path)

        self.assertEqual(loader.get_station("127").route_ids, ())


if __name__ == "__main__":
    unittest.main()
