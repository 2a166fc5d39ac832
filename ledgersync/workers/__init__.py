"""Celery app, sync and import tasks, and the job dispatcher."""
