"""
WSGI entry point for the automation service.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db migrate    # Flask-Migrate, schema history for deployments
"""

from practice_automation import create_app

app = create_app()
