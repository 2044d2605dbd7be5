"""
Poll the position API and print a text dashboard for each report.
"""
from __future__ import annotations

import logging
import time
from typing import Dict

import requests
from django.core.management.base import BaseCommand, CommandError

logger = logging.getLogger(__name__)

DEFAULT_URL = "http://127.0.0.1:8000/api/vehicle/"


class TransientFetchError(Exception):
    """A single poll failed; the next poll may succeed."""


def fetch_report(url: str, timeout: float) -> Dict:
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
        return response.json()
    except (requests.exceptions.RequestException, ValueError) as e:
        raise TransientFetchError(str(e)) from e


def format_coordinate(value: float, is_lat: bool) -> str:
    if is_lat:
        direction = "N" if value >= 0 else "S"
    else:
        direction = "E" if value >= 0 else "W"
    return f"{abs(value):.6f}° {direction}"


def speed_band(speed: float) -> str:
    if speed < 30:
        return "low"
    if speed < 50:
        return "moderate"
    return "high"


def format_distance(meters: int) -> str:
    if meters >= 1000:
        return f"{meters / 1000:.2f} km"
    return f"{meters} m"


def render_report(report: Dict) -> str:
    current = report["current"]
    status = "Complete!" if report["isComplete"] else "In Progress"
    lines = [
        f"Point {report['currentIndex'] + 1} of {report['totalPoints']}",
        f"  Progress: {report['progress']}% ({status})",
        "  Position: "
        f"{format_coordinate(current['latitude'], True)}, "
        f"{format_coordinate(current['longitude'], False)}",
        f"  Speed:    {current['speed']:.1f} km/h ({speed_band(current['speed'])})",
        f"  Heading:  {round(current['heading'])}°",
        f"  Distance: {format_distance(report['totalDistance'])}",
        f"  Recorded: {current['timestamp']}",
    ]
    return "\n".join(lines)


class Command(BaseCommand):
    help = "Poll the vehicle position API and print a live dashboard."

    def add_arguments(self, parser):
        parser.add_argument("--url", default=DEFAULT_URL, help="Position endpoint to poll.")
        parser.add_argument("--interval", type=float, default=3.0, help="Seconds between polls.")
        parser.add_argument("--timeout", type=float, default=5.0, help="Request timeout in seconds.")
        parser.add_argument(
            "--count", type=int, default=0, help="Stop after this many polls (0 polls forever)."
        )
        parser.add_argument(
            "--reset", action="store_true", help="Reset the simulation before polling."
        )

    def handle(self, *args, **options):
        url = options["url"]
        interval = options["interval"]
        timeout = options["timeout"]
        count = options["count"]

        if options["reset"]:
            try:
                response = requests.post(url, timeout=timeout)
                response.raise_for_status()
                message = response.json().get("message", "Simulation reset")
            except (requests.exceptions.RequestException, ValueError) as e:
                raise CommandError(f"Could not reset simulation: {e}") from e
            self.stdout.write(self.style.SUCCESS(message))

        polls = 0
        try:
            while True:
                try:
                    report = fetch_report(url, timeout)
                except TransientFetchError as e:
                    logger.warning(f"Error fetching vehicle data from {url}: {e}")
                    self.stderr.write(self.style.WARNING(f"Fetch failed, retrying next poll: {e}"))
                else:
                    self.stdout.write(render_report(report))

                polls += 1
                if count and polls >= count:
                    break
                time.sleep(interval)
        except KeyboardInterrupt:
            self.stdout.write("Stopped.")
