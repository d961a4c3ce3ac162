"""
main.py

Entry point for the Site Analytics & Delivery Schedule Dashboard API.

Loads settings from the environment, configures logging and builds the
FastAPI app with the in-memory store and the Google Analytics client.

Usage
-----
    # Option 1 — run directly
    python main.py

    # Option 2 — run via uvicorn CLI (recommended for development)
    uvicorn main:app --reload --port 8000

Once running, open your browser at:
    http://localhost:8000/docs      ← Swagger UI  (try every endpoint interactively)
    http://localhost:8000/redoc     ← ReDoc
    http://localhost:8000/health    ← liveness check

Configuration (environment or .env)
-----------------------------------
    DASHBOARD_GA_KEY_PATH=/secrets/ga-key.json
    DASHBOARD_OPERATORS='[{"email": "admin@example.com", "role": "admin", "token": "change-me-please"}]'
    DASHBOARD_STRICT_STATUS_VALIDATION=true

Quick-start walkthrough (use Swagger UI or curl)
-------------------------------------------------
1.  POST  /api/v1/sites                          — register a site with its GA4 property ID
                                                   Authorization: Bearer <operator token>
2.  GET   /api/v1/sites/{id}/dashboard?range=month — sorted dashboard tables
3.  POST  /api/v1/analytics                      — every report for a property at once
4.  POST  /api/v1/projects                       — create a project
5.  PUT   /api/v1/projects/{id}/schedule/phase   — move it through the phases
6.  PUT   /api/v1/projects/{id}/schedule/deadline — set the deadline
7.  GET   /api/v1/projects/{id}/schedule/history — newest change first
"""

import logging

import uvicorn

from api import create_app
from config import get_settings

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app(settings)


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=True,          # auto-reload on file changes during development
        log_level=settings.log_level,
    )
