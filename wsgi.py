"""
WSGI / Flask CLI entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi scheduler run          # single tick-runner process
    flask --app wsgi scheduler run-job action_escalation_check
    flask --app wsgi db migrate -m "description"
"""

from feedback_actions import create_app

app = create_app()
