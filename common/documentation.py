"""
API documentation utilities and enhanced OpenAPI configuration
"""
from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi
from typing import Dict, Any

def create_custom_openapi(app: FastAPI, title: str, version: str, description: str) -> Dict[str, Any]:
    """Create enhanced OpenAPI schema with auth schemes and the shared error envelope"""

    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=title,
        version=version,
        description=description,
        routes=app.routes,
    )

    components = openapi_schema.setdefault("components", {})
    components["securitySchemes"] = {
        "bearerAuth": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
            "description": "Admin JWT; the subject is recorded as the audit actor"
        },
        "stripeSignature": {
            "type": "apiKey",
            "in": "header",
            "name": "Stripe-Signature",
            "description": "HMAC-SHA256 signature of the raw body using the shared webhook secret"
        }
    }

    components.setdefault("schemas", {})["ErrorResponse"] = {
        "type": "object",
        "required": ["success", "error", "timestamp"],
        "properties": {
            "success": {"type": "boolean", "example": False},
            "error": {
                "type": "object",
                "required": ["code", "message"],
                "properties": {
                    "code": {"type": "string", "example": "CLASS_NOT_FOUND"},
                    "message": {"type": "string", "example": "Class not found with class code: CCT-999"},
                    "field": {"type": "string"},
                    "context": {"type": "object"}
                }
            },
            "timestamp": {"type": "number", "example": 1699123456.789},
            "trace_id": {"type": "string", "example": "abc123def456"},
            "retryable": {
                "type": "boolean",
                "description": "True when the gateway should redeliver the event later"
            }
        }
    }

    error_ref = {"application/json": {"schema": {"$ref": "#/components/schemas/ErrorResponse"}}}
    standard_responses = {
        "400": {"description": "Bad Request", "content": error_ref},
        "401": {"description": "Unauthorized", "content": error_ref},
        "404": {"description": "Not Found", "content": error_ref},
        "503": {"description": "Temporarily unavailable, retry later", "content": error_ref},
    }

    for path_item in openapi_schema.get("paths", {}).values():
        for operation in path_item.values():
            if not isinstance(operation, dict) or "responses" not in operation:
                continue
            for status, response in standard_responses.items():
                operation["responses"].setdefault(status, response)

    openapi_schema["tags"] = [
        {"name": "Webhooks", "description": "Signed payment gateway notifications"},
        {"name": "Reconciliation", "description": "Payout grouping and reconciled flags"},
        {"name": "Exports", "description": "Exactly-once CSV exports for the accounting system"},
        {"name": "Operations", "description": "Follow-ups, audit log and health"},
        {"name": "Waitlist", "description": "Course waitlist signups"},
    ]

    app.openapi_schema = openapi_schema
    return app.openapi_schema
