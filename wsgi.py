"""
WSGI / Flask CLI entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade
    flask --app wsgi seed-default-stages --tenant-id 1
    flask --app wsgi bootstrap-job-stages --tenant-id 1
"""

from app import create_app

app = create_app()
