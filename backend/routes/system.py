"""System routes - /health, /config, /diskspace."""

import logging

from flask import Blueprint, jsonify
from sqlalchemy import text

bp = Blueprint("system", __name__, url_prefix="/api/v1")
logger = logging.getLogger(__name__)


@bp.route("/health", methods=["GET"])
def health():
    """Health check endpoint.
    ---
    get:
      tags:
        - System
      summary: Basic health check
      description: Returns overall status, version, database state and the connectivity of each configured service.
      responses:
        200:
          description: System is healthy
          content:
            application/json:
              schema:
                type: object
                properties:
                  status:
                    type: string
                    enum: [healthy, degraded, unhealthy]
                  version:
                    type: string
                  database:
                    type: string
                  services:
                    type: object
                    additionalProperties:
                      type: string
        503:
          description: Database unavailable
    """
    from extensions import db
    from plex_client import get_plex_client
    from radarr_client import get_radarr_client
    from sonarr_client import get_sonarr_client
    from tautulli_client import get_tautulli_client
    from version import __version__

    try:
        db.session.execute(text("SELECT 1"))
        database = "ok"
    except Exception as e:
        logger.error("Database health check failed: %s", e)
        database = f"error: {e}"

    services = {}
    degraded = False
    for name, factory in (("sonarr", get_sonarr_client), ("radarr", get_radarr_client),
                          ("plex", get_plex_client), ("tautulli", get_tautulli_client)):
        client = factory()
        if client is None:
            services[name] = "not configured"
            continue
        healthy, message = client.health_check()
        services[name] = message if healthy else f"unhealthy: {message}"
        degraded = degraded or not healthy

    if database != "ok":
        status, code = "unhealthy", 503
    else:
        status, code = ("degraded" if degraded else "healthy"), 200
    return jsonify({
        "status": status,
        "version": __version__,
        "database": database,
        "services": services,
    }), code


@bp.route("/config", methods=["GET"])
def get_config():
    """Effective configuration with secrets redacted.
    ---
    get:
      tags:
        - System
      summary: Get configuration
      responses:
        200:
          description: Settings (API keys and tokens redacted)
    """
    from config import get_settings

    return jsonify(get_settings().get_safe_config())


@bp.route("/diskspace", methods=["GET"])
def disk_space():
    """Combined disk usage reported by Sonarr and Radarr.
    ---
    get:
      tags:
        - System
      summary: Disk space
      description: Disks are merged by path (Sonarr first) so shared mounts count once in the totals.
      responses:
        200:
          description: Disks, totals and per-service errors
          content:
            application/json:
              schema:
                type: object
                properties:
                  disks:
                    type: array
                    items:
                      type: object
                  totals:
                    type: object
                    properties:
                      capacity:
                        type: integer
                      used:
                        type: integer
                      free:
                        type: integer
                      percentage:
                        type: integer
                  errors:
                    type: array
                    items:
                      type: object
        400:
          description: Neither Sonarr nor Radarr is configured
    """
    from disk_space import collect_disk_space
    from error_handler import ConfigurationError
    from radarr_client import get_radarr_client
    from sonarr_client import get_sonarr_client

    clients = [(name, client) for name, client in (("sonarr", get_sonarr_client()),
                                                   ("radarr", get_radarr_client()))
               if client is not None]
    if not clients:
        raise ConfigurationError(
            "Neither Sonarr nor Radarr is configured",
            troubleshooting="Set PURGARR_SONARR_URL/API_KEY or PURGARR_RADARR_URL/API_KEY.",
        )
    return jsonify(collect_disk_space(clients))
