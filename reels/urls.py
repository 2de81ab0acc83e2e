from django.urls import path
from .views import JobCancelView, JobCreateView, JobDetailView, JobRegenerateView

urlpatterns = [
    path("jobs/", JobCreateView.as_view(), name="job_create"),
    path("jobs/<uuid:job_id>/", JobDetailView.as_view(), name="job_detail"),
    path("jobs/<uuid:job_id>/regenerate/", JobRegenerateView.as_view(), name="job_regenerate"),
    path("jobs/<uuid:job_id>/cancel/", JobCancelView.as_view(), name="job_cancel"),
]
