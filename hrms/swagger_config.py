"""Swagger/OpenAPI configuration for API documentation."""

from flasgger import Swagger  # type: ignore

SWAGGER_CONFIG = {
    "headers": [],
    "specs": [
        {
            "endpoint": "apispec_1",
            "route": "/api/v1/apispec.json",
            "rule_filter": lambda rule: rule.rule.startswith("/api/v1"),
            "model_filter": lambda tag: True,
        }
    ],
    "static_url_path": "/flasgger_static",
    "swagger_ui": True,
    "specs_route": "/api/docs",
}

SWAGGER_TEMPLATE = {
    "swagger": "2.0",
    "info": {
        "title": "HRMS Integrations API",
        "description": (
            "Manage connections to Azure DevOps, Asana and Confluence, map "
            "external identities to employees, trigger syncs and read the "
            "unified work items, commits and pages."
        ),
        "version": "1.0.0",
    },
    "host": "",  # Set from SERVER_NAME
    "basePath": "/api/v1",
    "schemes": ["http", "https"],
    "securityDefinitions": {
        "Bearer": {
            "type": "apiKey",
            "name": "Authorization",
            "in": "header",
            "description": (
                'API key authentication. Use format: "Bearer hrms_your_api_key_here". '
                "You can also use the X-API-Key header."
            ),
        },
        "ApiKeyHeader": {
            "type": "apiKey",
            "name": "X-API-Key",
            "in": "header",
            "description": "Alternative API key authentication via X-API-Key header.",
        },
    },
    "security": [{"Bearer": []}, {"ApiKeyHeader": []}],
    "tags": [
        {
            "name": "Authentication",
            "description": "Session login and API key management",
        },
        {
            "name": "Connections",
            "description": "Integration connection management and testing",
        },
        {
            "name": "Sync",
            "description": "Manual sync triggers, status and history",
        },
        {
            "name": "Identity",
            "description": "External user to employee mappings",
        },
        {
            "name": "Work",
            "description": "Unified work items, commits and Confluence pages",
        },
    ],
}


def init_swagger(app):
    """Initialize Swagger documentation for the Flask app."""
    template = dict(SWAGGER_TEMPLATE)
    template["host"] = app.config.get("SERVER_NAME") or "localhost:5000"
    return Swagger(app, config=SWAGGER_CONFIG, template=template)
