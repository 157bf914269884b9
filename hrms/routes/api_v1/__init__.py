"""HRMS REST API v1.

Versioned, documented endpoints for integration management and the unified
work data they produce.
"""

from flask import Blueprint

api_v1_bp = Blueprint("api_v1", __name__, url_prefix="/api/v1")

# Import all route modules to register their endpoints
from . import auth, integrations  # noqa: E402, F401
