"""
URL configuration for streamvault project.

The `urlpatterns` list routes URLs to views. For more information please see:
    https://docs.djangoproject.com/en/5.2/topics/http/urls/
"""

from django.contrib import admin
from django.urls import include, path

admin.site.site_header = 'StreamVault Administration'  # default: "Django Administration"
admin.site.site_title = 'StreamVault site admin'  # default: "Django site admin"


urlpatterns = [
    path('admin/', admin.site.urls),
    # Ingestion JSON API
    path('api/ingest/', include('ingest.urls')),
]
