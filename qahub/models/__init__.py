"""
QA Lifecycle Hub
Shared SQLAlchemy handle.

All models import ``db`` from here; the app factory binds it with
``db.init_app(app)``.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
