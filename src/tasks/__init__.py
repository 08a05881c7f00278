"""Background tasks for TutorLink.

This package contains Celery tasks for:
- Retrying failed post-commit allocation effects
- Backfilling sessions for live allocations
"""
