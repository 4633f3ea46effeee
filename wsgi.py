"""
Flask-Migrate / Alembic entry point.

Usage:
    flask db upgrade
    flask db migrate -m "description"
    gunicorn wsgi:app
"""

from shopfloor import create_app

app = create_app()
