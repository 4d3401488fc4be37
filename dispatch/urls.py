from django.urls import path
from .views import (
    ActiveRequestsAPIView, HospitalRankingAPIView, RequestProgressAPIView, RouteAPIView
)

app_name = "dispatch"

urlpatterns = [
    path("api/hospitals/ranked/", HospitalRankingAPIView.as_view(), name="ranked-hospitals"),
    path("api/route/", RouteAPIView.as_view(), name="route"),
    path("api/requests/active/", ActiveRequestsAPIView.as_view(), name="active-requests"),
    path("api/requests/<str:request_id>/progress/", RequestProgressAPIView.as_view(), name="request-progress"),
]
