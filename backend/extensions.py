"""Shared Flask extensions - import from here to avoid circular imports.

The SQLAlchemy instance is created unbound; app.py calls db.init_app(app)
inside the create_app() factory function.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
