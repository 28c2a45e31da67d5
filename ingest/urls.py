from django.urls import path

from ingest import views

urlpatterns = [
    path('jobs/', views.create_job_view, name='ingest_create_job'),
    path('jobs/<str:job_id>/', views.job_detail_view, name='ingest_job_detail'),
    path('jobs/<str:job_id>/cancel/', views.cancel_job_view, name='ingest_cancel_job'),
    path('jobs/<str:job_id>/stream/', views.job_status_stream, name='ingest_job_stream'),
    path('uploads/', views.request_upload_view, name='ingest_request_upload'),
    path('uploads/complete/', views.complete_upload_view, name='ingest_complete_upload'),
    path('remote/info/', views.remote_info_view, name='ingest_remote_info'),
    path('remote/', views.remote_download_view, name='ingest_remote_download'),
]
