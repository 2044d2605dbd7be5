from django.urls import path
from .views import DashboardView, VehiclePositionAPIView, VehicleRouteAPIView

app_name = "vehicle"

urlpatterns = [
    path("", DashboardView.as_view(), name="dashboard"),
    path("api/vehicle/", VehiclePositionAPIView.as_view(), name="vehicle-position"),
    path("api/vehicle/route/", VehicleRouteAPIView.as_view(), name="vehicle-route"),
]
