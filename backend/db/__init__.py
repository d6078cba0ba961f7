"""Database package - ORM models and repositories.

The engine and session are owned by Flask-SQLAlchemy (extensions.db);
tables are created by app.create_app() via db.create_all().
"""
