from flask import Blueprint

from app.opsdesk.constants import SUGGESTED_CATEGORIES

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    return {"app": "opsdesk", "api": "/api/systems", "categories": list(SUGGESTED_CATEGORIES)}


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Liveness probe. No DB access.
    """
    return "ok", 200
