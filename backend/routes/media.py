"""Catalog routes - /media/*."""

import logging

from flask import Blueprint, jsonify, request

from error_handler import NotFoundError, ValidationError

bp = Blueprint("media", __name__, url_prefix="/api/v1")
logger = logging.getLogger(__name__)


def _bool_arg(name):
    value = request.args.get(name)
    if value is None or value == "":
        return None
    return value.lower() in ("1", "true", "yes")


@bp.route("/media", methods=["GET"])
def list_media():
    """Paginated catalog listing.
    ---
    get:
      tags:
        - Media
      summary: List media
      parameters:
        - in: query
          name: page
          schema:
            type: integer
            default: 1
        - in: query
          name: per_page
          schema:
            type: integer
            default: 50
        - in: query
          name: type
          schema:
            type: string
            enum: [movie, show, other]
        - in: query
          name: protected
          schema:
            type: boolean
        - in: query
          name: search
          schema:
            type: string
      responses:
        200:
          description: Paginated catalog entries
    """
    from db.repositories.catalog import CatalogRepository

    return jsonify(CatalogRepository().list_media(
        page=request.args.get("page", 1, type=int),
        per_page=request.args.get("per_page", 50, type=int),
        media_type=request.args.get("type") or None,
        protected=_bool_arg("protected"),
        search=request.args.get("search") or None,
    ))


@bp.route("/media/<int:media_id>/protect", methods=["PUT"])
def protect_media(media_id):
    """Set or clear the protected flag. Protected entries are never proposed for deletion.
    ---
    put:
      tags:
        - Media
      summary: Protect media
      requestBody:
        required: true
        content:
          application/json:
            schema:
              type: object
              required:
                - protected
              properties:
                protected:
                  type: boolean
      responses:
        200:
          description: Updated entry
        400:
          description: Missing protected flag
        404:
          description: Entry not found
    """
    from db.repositories.catalog import CatalogRepository

    data = request.get_json(silent=True) or {}
    if "protected" not in data:
        raise ValidationError("protected is required")
    item = CatalogRepository().set_protected(media_id, bool(data["protected"]))
    if item is None:
        raise NotFoundError(f"Media {media_id} not found", context={"media_id": media_id})
    logger.info("Media %d protected=%s", media_id, item["protected"])
    return jsonify(item)
