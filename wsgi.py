"""
WSGI / Flask CLI entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db migrate -m "description"
    flask --app wsgi backfill-failure-details
"""

from coffee_processing import create_app

app = create_app()
