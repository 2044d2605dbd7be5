from __future__ import annotations

import json
import logging

from django.conf import settings
from django.http import JsonResponse
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from django.views.generic import TemplateView, View

from .geometry import route_feature
from .services import DatasetError, get_simulation

logger = logging.getLogger(__name__)

POLL_INTERVAL_MS = 3000


class DashboardView(TemplateView):
    template_name = "vehicle/dashboard.html"

    def get_context_data(self, **kwargs):
        context = super().get_context_data(**kwargs)
        mapbox_token = getattr(settings, "MAPBOX_ACCESS_TOKEN", "") or ""
        mapbox_style = getattr(settings, "MAPBOX_STYLE_ID", "mapbox/streets-v12")
        openstreet_url = getattr(
            settings,
            "OPENSTREET_TILE_URL",
            "https://{s}.tile.openstreetmap.org/{z}/{x}/{y}.png",
        )
        openstreet_attribution = getattr(
            settings,
            "OPENSTREET_ATTRIBUTION",
            '&copy; <a href="https://www.openstreetmap.org/copyright">OpenStreetMap</a> contributors',
        )

        tile_providers = {
            "openstreet": {
                "tileUrl": openstreet_url,
                "attribution": openstreet_attribution,
                "maxZoom": 19,
            }
        }
        if mapbox_token:
            tile_providers["mapbox"] = {
                "accessToken": mapbox_token,
                "styleId": mapbox_style,
            }

        context["map_config_json"] = json.dumps(
            {
                "providers": tile_providers,
                "defaultProvider": "mapbox" if mapbox_token else "openstreet",
                # Hyderabad, shown until the first report arrives.
                "center": {"lat": 17.385, "lng": 78.4867, "zoom": 16},
                "pollIntervalMs": POLL_INTERVAL_MS,
            }
        )
        return context


@method_decorator(csrf_exempt, name="dispatch")
class VehiclePositionAPIView(View):
    def get(self, request, *args, **kwargs):
        try:
            report = get_simulation().position_report()
        except DatasetError as e:
            logger.error(f"Error fetching vehicle data: {e}")
            return JsonResponse({"error": "Failed to fetch vehicle data"}, status=500)
        except Exception as e:
            logger.error(f"Unexpected error building vehicle report: {e}")
            return JsonResponse({"error": "Failed to fetch vehicle data"}, status=500)
        return JsonResponse(report.as_dict())

    def post(self, request, *args, **kwargs):
        get_simulation().reset()
        return JsonResponse({"message": "Simulation reset successfully"})


class VehicleRouteAPIView(View):
    def get(self, request, *args, **kwargs):
        try:
            route = get_simulation().waypoints()
            feature = route_feature(route)
        except DatasetError as e:
            logger.error(f"Error fetching vehicle route: {e}")
            return JsonResponse({"error": "Failed to fetch vehicle route"}, status=500)
        except Exception as e:
            logger.error(f"Unexpected error building vehicle route: {e}")
            return JsonResponse({"error": "Failed to fetch vehicle route"}, status=500)
        return JsonResponse(feature)
