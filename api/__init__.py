"""
HTTP surface of the notification dispatch service.

- Event ingestion (POST /events)
- Direct submissions, user feeds and queue administration (/notifications)
- Template catalogue and previews (/emails)
- Health checks
"""

from api.main import app, create_app

__all__ = ["app", "create_app"]
