from django.urls import path

from . import views

urlpatterns = [
    path("aemet/", views.aemet_proxy, name="aemet_proxy"),
]
