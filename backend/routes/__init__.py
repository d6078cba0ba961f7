"""Routes package - Blueprint registration for all API endpoints.

Each blueprint module defines a `bp` variable. This module provides
register_blueprints() which imports and registers all of them.
"""


def register_blueprints(app):
    """Import and register all API blueprints on the Flask app."""
    from routes.rules import bp as rules_bp
    from routes.pending_deletions import bp as pending_deletions_bp
    from routes.sync import bp as sync_bp
    from routes.history import bp as history_bp
    from routes.media import bp as media_bp
    from routes.system import bp as system_bp
    from routes.notifications import bp as notifications_bp

    for blueprint in [
        rules_bp,
        pending_deletions_bp,
        sync_bp,
        history_bp,
        media_bp,
        system_bp,
        notifications_bp,
    ]:
        app.register_blueprint(blueprint)
