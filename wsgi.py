"""
Flask-Migrate / Alembic and Socket.IO entry point.

Usage:
    flask --app wsgi db init       # first time only (creates migrations/)
    flask --app wsgi db migrate -m "description"
    flask --app wsgi db upgrade
    python wsgi.py                 # dev server with the real-time channel
"""

import os

from qahub import create_app, socketio

app = create_app()

if __name__ == "__main__":
    socketio.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "5000")))
