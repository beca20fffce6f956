"""
Recruitment API - HTTP service and background workers for recruitment lists.

This package wires the recruitment_sync engine to its infrastructure:
- PostgreSQL persistence (recruitment_list schema) via SQLAlchemy
- Study service and SMTP bridge clients over HTTP
- Celery tasks for participant and research data syncs
- FastAPI routes for list management
"""

__version__ = "1.0.0"
