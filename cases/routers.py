"""
URL mappings for the PN case API.

Trailing slashes are omitted to match the paths the clinic front end
already calls.
"""
from django.urls import path, include

from .views import cases, courses, health

urlpatterns = [
    # django_prometheus.urls serves /metrics itself
    path('', include('django_prometheus.urls')),
    path('healthz', health.healthz),
    path('api/pn', cases.pn_case_create, name='pn-create'),
    path('api/pn/<int:case_id>', cases.pn_case_detail, name='pn-detail'),
    path('api/pn/<int:case_id>/status', cases.pn_case_status, name='pn-status'),
    path('api/pn/<int:case_id>/reverse-status', cases.pn_case_reverse_status, name='pn-reverse-status'),
    path('api/pn/<int:case_id>/timeline', cases.pn_case_timeline, name='pn-timeline'),
    path('api/pn/<int:case_id>/soap-notes', cases.pn_case_soap_notes, name='pn-soap-notes'),
    path('api/pn/<int:case_id>/certificate', cases.pn_case_certificate, name='pn-certificate'),
    path('api/courses/<int:course_id>', courses.course_detail, name='course-detail'),
]
