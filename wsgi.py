"""
Flask-Migrate / Alembic and WSGI entry point.

Usage:
    flask db migrate -m "description"
    flask db upgrade
    gunicorn wsgi:app
"""

from procurement import create_app

app = create_app()
