import json
import tempfile
import threading
import traceback
from io import StringIO
from pathlib import Path
from unittest import mock

import requests
from django.apps import apps
from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import Client, SimpleTestCase

from . import services
from .geometry import route_feature
from .management.commands import watch_vehicle
from .services import DatasetError, SimulationState, Waypoint, haversine_km, round_half_up


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance_ms(self, milliseconds):
        self.now += milliseconds / 1000.0


def equator_route(count=5):
    return [
        Waypoint(
            latitude=0.0,
            longitude=float(index),
            timestamp=f"2024-01-15T10:00:{index * 3:02d}.000Z",
            speed=20.0 + index,
            heading=90.0,
        )
        for index in range(count)
    ]


def make_simulation(count=5, start=1000.0):
    clock = FakeClock(start)
    return SimulationState(equator_route(count), clock=clock), clock


class DistanceTests(SimpleTestCase):
    def test_same_point_is_zero(self):
        self.assertEqual(haversine_km((17.4474, 78.3762), (17.4474, 78.3762)), 0.0)

    def test_distance_is_symmetric(self):
        a = (17.4474, 78.3762)
        b = (17.4520, 78.3847)
        self.assertAlmostEqual(haversine_km(a, b), haversine_km(b, a), places=12)

    def test_one_degree_of_longitude_on_equator(self):
        self.assertAlmostEqual(haversine_km((0.0, 0.0), (0.0, 1.0)), 111.19, delta=0.1)

    def test_round_half_up(self):
        self.assertEqual(round_half_up(12.5), 13)
        self.assertEqual(round_half_up(12.4999), 12)
        self.assertEqual(round_half_up(0.0), 0)


class SimulationStateTests(SimpleTestCase):
    def test_index_follows_elapsed_buckets(self):
        simulation, clock = make_simulation(count=5)
        start = clock.now
        expectations = {
            0: 0,
            3000: 1,
            6000: 2,
            3000 * 5: 0,
            3000 * 5 + 1500: 0,
            3000 * 7 + 2999: 2,
        }
        for elapsed_ms, expected in expectations.items():
            clock.now = start + elapsed_ms / 1000.0
            self.assertEqual(simulation.position_report().current_index, expected, elapsed_ms)
            self.assertEqual(simulation.current_index, expected)

    def test_scenario_after_3100_ms(self):
        simulation, clock = make_simulation(count=5)
        route = equator_route(5)
        clock.advance_ms(3100)

        report = simulation.position_report()

        self.assertEqual(report.current_index, 1)
        self.assertEqual(report.current, route[1])
        self.assertEqual(report.next, route[2])
        self.assertEqual(report.progress, 40)
        self.assertEqual(report.total_points, 5)
        self.assertFalse(report.is_complete)
        expected_meters = round_half_up(haversine_km((0.0, 0.0), (0.0, 1.0)) * 1000)
        self.assertEqual(report.total_distance, expected_meters)

    def test_scenario_wraps_after_16000_ms(self):
        simulation, clock = make_simulation(count=5)
        route = equator_route(5)
        clock.advance_ms(16000)

        report = simulation.position_report()

        self.assertEqual(report.current_index, 0)
        self.assertEqual(report.current, route[0])
        self.assertEqual(report.next, route[1])
        self.assertEqual(report.route, (route[0],))
        self.assertEqual(report.total_distance, 0)
        self.assertFalse(report.is_complete)

    def test_last_waypoint_is_complete_and_next_wraps(self):
        simulation, clock = make_simulation(count=5)
        route = equator_route(5)
        clock.advance_ms(4 * 3000)

        report = simulation.position_report()

        self.assertEqual(report.current_index, 4)
        self.assertTrue(report.is_complete)
        self.assertEqual(report.progress, 100)
        self.assertEqual(report.next, route[0])
        self.assertAlmostEqual(report.total_distance, 4 * 111195, delta=2)

    def test_is_complete_only_on_last_index(self):
        simulation, clock = make_simulation(count=4)
        for _ in range(12):
            report = simulation.position_report()
            self.assertEqual(report.is_complete, report.current_index == 3)
            clock.advance_ms(3000)

    def test_progress_is_monotonic_until_wrap(self):
        simulation, clock = make_simulation(count=6)
        previous = simulation.position_report()
        for _ in range(40):
            clock.advance_ms(500)
            report = simulation.position_report()
            if report.current_index == 0 and previous.current_index != 0:
                self.assertLess(report.progress, previous.progress)
            else:
                self.assertGreaterEqual(report.progress, previous.progress)
            previous = report

    def test_progress_rounds_half_up(self):
        simulation, _ = make_simulation(count=8)
        self.assertEqual(simulation.position_report().progress, 13)

    def test_prefix_ends_at_current(self):
        simulation, clock = make_simulation(count=7)
        for _ in range(10):
            report = simulation.position_report()
            self.assertEqual(len(report.route), report.current_index + 1)
            self.assertEqual(report.route[-1], report.current)
            clock.advance_ms(3000)

    def test_reset_returns_to_first_waypoint(self):
        simulation, clock = make_simulation(count=5)
        clock.advance_ms(9500)
        self.assertEqual(simulation.position_report().current_index, 3)

        simulation.reset()
        report = simulation.position_report()

        self.assertEqual(simulation.start_time, clock.now)
        self.assertEqual(report.current_index, 0)
        self.assertEqual(report.progress, round_half_up(1 / 5 * 100))

        clock.advance_ms(3000)
        self.assertEqual(simulation.position_report().current_index, 1)

    def test_clock_behind_start_stays_on_first_waypoint(self):
        simulation, clock = make_simulation(count=5)
        clock.now -= 10
        self.assertEqual(simulation.position_report().current_index, 0)

    def test_concurrent_reset_and_query_keep_index_in_range(self):
        simulation = SimulationState(equator_route(5))
        errors = []

        def query():
            for _ in range(200):
                index = simulation.position_report().current_index
                if not 0 <= index < 5:
                    errors.append(index)

        def reset():
            for _ in range(200):
                simulation.reset()

        threads = [threading.Thread(target=query) for _ in range(3)]
        threads.append(threading.Thread(target=reset))
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])

    def test_rejects_non_positive_step(self):
        with self.assertRaises(ValueError):
            SimulationState(equator_route(3), step_seconds=0)

    def test_missing_route_fails_every_query(self):
        simulation = SimulationState(None, clock=FakeClock())
        with self.assertRaises(DatasetError):
            simulation.position_report()
        simulation.reset()
        with self.assertRaises(DatasetError):
            simulation.position_report()


class RouteDatasetTests(SimpleTestCase):
    def setUp(self):
        self.tempdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tempdir.cleanup)

    def write(self, content):
        path = Path(self.tempdir.name) / "route.json"
        path.write_text(content, encoding="utf-8")
        return path

    def test_bundled_route_loads(self):
        route = services.load_route(services.DEFAULT_ROUTE_FILE)
        self.assertGreater(len(route), 1)
        self.assertIsInstance(route[0], Waypoint)
        self.assertEqual(
            set(route[0].as_dict()), {"latitude", "longitude", "timestamp", "speed", "heading"}
        )

    def test_valid_file(self):
        path = self.write(
            json.dumps(
                [
                    {"latitude": 17.4, "longitude": 78.3, "timestamp": "t0", "speed": 10, "heading": 45},
                    {"latitude": 17.5, "longitude": 78.4, "timestamp": "t1", "speed": 12.5, "heading": 50},
                ]
            )
        )
        route = services.load_route(path)
        self.assertEqual(len(route), 2)
        self.assertEqual(route[1].speed, 12.5)
        self.assertEqual(route[0].heading, 45.0)

    def test_missing_file(self):
        with self.assertRaises(DatasetError):
            services.load_route(Path(self.tempdir.name) / "absent.json")

    def test_invalid_json(self):
        with self.assertRaises(DatasetError):
            services.load_route(self.write("[{"))

    def test_empty_list(self):
        with self.assertRaises(DatasetError):
            services.load_route(self.write("[]"))

    def test_not_a_list(self):
        with self.assertRaises(DatasetError):
            services.load_route(self.write('{"latitude": 1}'))

    def test_missing_coordinate(self):
        with self.assertRaises(DatasetError):
            services.load_route(self.write('[{"latitude": 1.0}]'))

    def test_non_numeric_value(self):
        with self.assertRaises(DatasetError):
            services.load_route(self.write('[{"latitude": "17.4", "longitude": 78.3}]'))
        with self.assertRaises(DatasetError):
            services.load_route(self.write('[{"latitude": 17.4, "longitude": 78.3, "speed": true}]'))

    def test_non_finite_value(self):
        with self.assertRaises(DatasetError):
            services.load_route(
                self.write('[{"latitude": 0, "longitude": 0}, {"latitude": NaN, "longitude": 1}]')
            )
        with self.assertRaises(DatasetError):
            services.load_route(self.write('[{"latitude": 0, "longitude": Infinity}]'))
        with self.assertRaises(DatasetError):
            services.load_route(
                self.write('[{"latitude": 0, "longitude": 0, "heading": -Infinity}]')
            )

    def test_load_error_traceback_is_not_extended_by_queries(self):
        with self.assertLogs("vehicle.services", level="ERROR"):
            simulation = SimulationState.from_file(Path(self.tempdir.name) / "absent.json")
        stored = simulation.load_error
        frames_before = len(traceback.extract_tb(stored.__traceback__))

        raised = []
        for _ in range(50):
            with self.assertRaises(DatasetError) as ctx:
                simulation.position_report()
            raised.append(ctx.exception)

        self.assertEqual(len(traceback.extract_tb(stored.__traceback__)), frames_before)
        self.assertIsNot(raised[0], raised[1])
        self.assertIs(raised[-1].__cause__, stored)
        self.assertEqual(str(raised[-1]), str(stored))

    def test_from_file_keeps_process_alive_on_bad_dataset(self):
        with self.assertLogs("vehicle.services", level="ERROR"):
            simulation = SimulationState.from_file(self.write("not json"))
        self.assertIsNone(simulation.route)
        with self.assertRaises(DatasetError):
            simulation.position_report()

    def test_app_owns_a_simulation(self):
        simulation = apps.get_app_config("vehicle").simulation
        self.assertIsInstance(simulation, SimulationState)
        self.assertIs(services.get_simulation(), simulation)
        self.assertGreater(len(simulation.waypoints()), 0)


class RouteGeometryTests(SimpleTestCase):
    def test_route_feature_is_a_linestring(self):
        feature = route_feature(equator_route(5))

        self.assertEqual(feature["type"], "Feature")
        self.assertEqual(feature["geometry"]["type"], "LineString")
        coordinates = [list(pair) for pair in feature["geometry"]["coordinates"]]
        self.assertEqual(coordinates[0], [0.0, 0.0])
        self.assertEqual(coordinates[4], [4.0, 0.0])
        self.assertEqual(feature["properties"]["totalPoints"], 5)
        self.assertEqual(feature["properties"]["bounds"], [[0.0, 0.0], [0.0, 4.0]])
        self.assertAlmostEqual(feature["properties"]["lengthMeters"], 4 * 111195, delta=2)

    def test_single_point_route(self):
        feature = route_feature(equator_route(1))
        self.assertEqual(feature["geometry"]["type"], "Point")
        self.assertEqual(feature["properties"]["lengthMeters"], 0)


class VehicleAPITests(SimpleTestCase):
    def setUp(self):
        self.simulation, self.clock = make_simulation(count=5)
        patcher = mock.patch("vehicle.views.get_simulation", return_value=self.simulation)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.client = Client()

    def test_position_payload(self):
        self.clock.advance_ms(3100)
        response = self.client.get("/api/vehicle/")
        self.assertEqual(response.status_code, 200)

        payload = response.json()
        for key in (
            "current",
            "next",
            "route",
            "progress",
            "totalDistance",
            "currentIndex",
            "totalPoints",
            "isComplete",
        ):
            self.assertIn(key, payload)
        self.assertEqual(payload["currentIndex"], 1)
        self.assertEqual(payload["progress"], 40)
        self.assertEqual(payload["totalPoints"], 5)
        self.assertFalse(payload["isComplete"])
        self.assertEqual(len(payload["route"]), 2)
        self.assertEqual(payload["current"]["longitude"], 1.0)
        self.assertEqual(payload["next"]["longitude"], 2.0)
        self.assertEqual(
            set(payload["current"]), {"latitude", "longitude", "timestamp", "speed", "heading"}
        )

    def test_reset(self):
        self.clock.advance_ms(9000)
        self.assertEqual(self.client.get("/api/vehicle/").json()["currentIndex"], 3)

        response = self.client.post("/api/vehicle/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"message": "Simulation reset successfully"})
        self.assertEqual(self.client.get("/api/vehicle/").json()["currentIndex"], 0)

    def test_reset_is_csrf_exempt(self):
        client = Client(enforce_csrf_checks=True)
        self.assertEqual(client.post("/api/vehicle/").status_code, 200)

    def test_dataset_error_returns_server_error(self):
        broken = SimulationState(None, load_error=DatasetError("missing"))
        with mock.patch("vehicle.views.get_simulation", return_value=broken):
            with self.assertLogs("vehicle.views", level="ERROR"):
                response = self.client.get("/api/vehicle/")
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {"error": "Failed to fetch vehicle data"})

    def test_unexpected_error_returns_json_payload(self):
        failing = mock.Mock()
        failing.position_report.side_effect = ValueError("cannot convert float NaN to integer")
        with mock.patch("vehicle.views.get_simulation", return_value=failing):
            with self.assertLogs("vehicle.views", level="ERROR"):
                response = self.client.get("/api/vehicle/")
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response["Content-Type"], "application/json")
        self.assertEqual(response.json(), {"error": "Failed to fetch vehicle data"})

    def test_route_unexpected_error_returns_json_payload(self):
        with mock.patch("vehicle.views.route_feature", side_effect=ValueError("bad geometry")):
            with self.assertLogs("vehicle.views", level="ERROR"):
                response = self.client.get("/api/vehicle/route/")
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), {"error": "Failed to fetch vehicle route"})

    def test_unsupported_method(self):
        self.assertEqual(self.client.put("/api/vehicle/").status_code, 405)

    def test_route_geometry(self):
        response = self.client.get("/api/vehicle/route/")
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["geometry"]["type"], "LineString")
        self.assertEqual(payload["geometry"]["coordinates"][2], [2.0, 0.0])
        self.assertEqual(payload["properties"]["totalPoints"], 5)

    def test_route_geometry_dataset_error(self):
        broken = SimulationState(None)
        with mock.patch("vehicle.views.get_simulation", return_value=broken):
            with self.assertLogs("vehicle.views", level="ERROR"):
                response = self.client.get("/api/vehicle/route/")
        self.assertEqual(response.status_code, 500)
        self.assertIn("error", response.json())

    def test_dashboard_page(self):
        response = self.client.get("/")
        self.assertEqual(response.status_code, 200)
        self.assertContains(response, "Vehicle Tracking System")
        self.assertContains(response, "/api/vehicle/route/")
        self.assertContains(response, "pollIntervalMs")
        self.assertContains(response, "rotate(${heading}deg)")
        self.assertContains(response, "hideError();")


def sample_report(index=1, total=5, complete=False):
    return {
        "current": {
            "latitude": 17.4474,
            "longitude": -78.3762,
            "timestamp": "2024-01-15T10:00:03.000Z",
            "speed": 35.5,
            "heading": 62.0,
        },
        "next": {},
        "route": [],
        "progress": 40,
        "totalDistance": 1250,
        "currentIndex": index,
        "totalPoints": total,
        "isComplete": complete,
    }


class WatchVehicleCommandTests(SimpleTestCase):
    def setUp(self):
        sleep = mock.patch("vehicle.management.commands.watch_vehicle.time.sleep")
        self.sleep = sleep.start()
        self.addCleanup(sleep.stop)

    def ok_response(self, payload):
        response = mock.Mock()
        response.json.return_value = payload
        response.raise_for_status.return_value = None
        return response

    def test_formatting_helpers(self):
        self.assertEqual(watch_vehicle.format_coordinate(17.4474, True), "17.447400° N")
        self.assertEqual(watch_vehicle.format_coordinate(-78.3762, False), "78.376200° W")
        self.assertEqual(watch_vehicle.speed_band(29.9), "low")
        self.assertEqual(watch_vehicle.speed_band(30), "moderate")
        self.assertEqual(watch_vehicle.speed_band(50), "high")
        self.assertEqual(watch_vehicle.format_distance(999), "999 m")
        self.assertEqual(watch_vehicle.format_distance(1250), "1.25 km")

    def test_prints_report(self):
        out = StringIO()
        with mock.patch(
            "vehicle.management.commands.watch_vehicle.requests.get",
            return_value=self.ok_response(sample_report()),
        ) as get:
            call_command("watch_vehicle", count=1, url="http://sim/api/vehicle/", stdout=out)

        get.assert_called_once_with("http://sim/api/vehicle/", timeout=5.0)
        output = out.getvalue()
        self.assertIn("Point 2 of 5", output)
        self.assertIn("40% (In Progress)", output)
        self.assertIn("17.447400° N, 78.376200° W", output)
        self.assertIn("35.5 km/h (moderate)", output)
        self.assertIn("1.25 km", output)
        self.sleep.assert_not_called()

    def test_recovers_on_next_poll(self):
        out = StringIO()
        err = StringIO()
        responses = [
            requests.exceptions.ConnectionError("connection refused"),
            self.ok_response(sample_report(index=4, complete=True)),
        ]
        with mock.patch(
            "vehicle.management.commands.watch_vehicle.requests.get", side_effect=responses
        ):
            with self.assertLogs("vehicle.management.commands.watch_vehicle", level="WARNING"):
                call_command("watch_vehicle", count=2, interval=3, stdout=out, stderr=err)

        self.assertIn("connection refused", err.getvalue())
        self.assertIn("Point 5 of 5", out.getvalue())
        self.assertIn("Complete!", out.getvalue())
        self.sleep.assert_called_once_with(3.0)

    def test_server_error_is_transient(self):
        response = mock.Mock()
        response.raise_for_status.side_effect = requests.exceptions.HTTPError("500 Server Error")
        with mock.patch(
            "vehicle.management.commands.watch_vehicle.requests.get", return_value=response
        ):
            with self.assertRaises(watch_vehicle.TransientFetchError):
                watch_vehicle.fetch_report("http://sim/api/vehicle/", timeout=1)

    def test_reset_before_polling(self):
        out = StringIO()
        with mock.patch(
            "vehicle.management.commands.watch_vehicle.requests.post",
            return_value=self.ok_response({"message": "Simulation reset successfully"}),
        ) as post, mock.patch(
            "vehicle.management.commands.watch_vehicle.requests.get",
            return_value=self.ok_response(sample_report(index=0)),
        ):
            call_command("watch_vehicle", count=1, reset=True, stdout=out)

        post.assert_called_once()
        self.assertIn("Simulation reset successfully", out.getvalue())
        self.assertIn("Point 1 of 5", out.getvalue())

    def test_reset_failure_is_a_command_error(self):
        with mock.patch(
            "vehicle.management.commands.watch_vehicle.requests.post",
            side_effect=requests.exceptions.Timeout("timed out"),
        ):
            with self.assertRaises(CommandError):
                call_command("watch_vehicle", count=1, reset=True, stdout=StringIO())

    def test_reset_with_non_json_body_is_a_command_error(self):
        response = mock.Mock()
        response.raise_for_status.return_value = None
        response.json.side_effect = ValueError("Expecting value")
        with mock.patch(
            "vehicle.management.commands.watch_vehicle.requests.post", return_value=response
        ):
            with self.assertRaises(CommandError):
                call_command("watch_vehicle", count=1, reset=True, stdout=StringIO())
