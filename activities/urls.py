from django.urls import path

from . import views

urlpatterns = [
    path("", views.ActivityListView.as_view(), name="activity_list"),
    path("past/", views.ActivityListView.as_view(), {"past": True}, name="activity_list_past"),
    path("new/", views.activity_form, name="activity_create"),
    path("new/material/", views.material_selector, name="activity_material_selector_new"),
    path("new/discard/", views.discard_draft, name="activity_discard_new"),
    path("<uuid:pk>/", views.ActivityDetailView.as_view(), name="activity_detail"),
    path("<uuid:pk>/edit/", views.activity_form, name="activity_edit"),
    path("<uuid:pk>/edit/material/", views.material_selector, name="activity_material_selector"),
    path("<uuid:pk>/edit/discard/", views.discard_draft, name="activity_discard"),
    path("<uuid:pk>/cancel/", views.activity_cancel, name="activity_cancel"),
    path("<uuid:pk>/weather/", views.activity_weather, name="activity_weather"),
    path("<uuid:pk>/activity.ics", views.activity_ics, name="activity_ics"),
]
