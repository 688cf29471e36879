from django.contrib import admin
from django.urls import include, path
from django.views.generic.base import RedirectView

urlpatterns = [
    path("admin/", admin.site.urls),
    path("activities/", include("activities.urls")),
    path("material/", include("material.urls")),
    path("weather/", include("weather.urls")),
    path("", RedirectView.as_view(pattern_name="activity_list"), name="home"),
]
