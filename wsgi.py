"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi generate-snapshots --date 2026-03-01
"""

from capacity_insights import create_app

app = create_app()
