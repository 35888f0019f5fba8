from django.urls import path

from .api import health_view

app_name = "monitoring"

urlpatterns = [
    # liveness plus db and upstream breaker states
    path("health/", health_view, name="health"),
]
