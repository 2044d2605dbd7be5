from django.apps import AppConfig
from django.conf import settings


class VehicleConfig(AppConfig):
    name = "vehicle"
    verbose_name = "Vehicle route simulator"

    def ready(self):
        from .services import DEFAULT_ROUTE_FILE, DEFAULT_STEP_SECONDS, SimulationState

        config = getattr(settings, "VEHICLE_SIMULATION", {})
        self.simulation = SimulationState.from_file(
            config.get("route_file", DEFAULT_ROUTE_FILE),
            step_seconds=config.get("step_seconds", DEFAULT_STEP_SECONDS),
        )
