"""
Service layer for media ingestion.

This module contains reusable functions for storing, fetching and processing
media, independent of the database/Django models. These functions are used by:
- The job orchestrator running inside Huey workers (ingest/orchestrator.py)
- The upload endpoints (ingest/views.py)
- Management commands (ingest/management/commands/)
"""
