"""CORS and security headers.

Applied to every response, including preflights and error responses, so
browsers see the same policy whichever branch produced the reply.
"""

from __future__ import annotations
from typing import Dict, Optional, Sequence

from fastapi import FastAPI, Request
from fastapi.responses import Response

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
}


def cors_headers(origin: Optional[str], allowed_origins: Sequence[str],
                 production: bool) -> Dict[str, str]:
    if not production:
        allowed_origin = origin or "*"
    elif origin and origin in allowed_origins:
        allowed_origin = origin
    else:
        allowed_origin = allowed_origins[0] if allowed_origins else "null"

    headers = {
        "Access-Control-Allow-Origin": allowed_origin,
        "Access-Control-Allow-Headers": (
            "authorization, x-client-info, apikey, content-type"
        ),
        "Access-Control-Allow-Methods": "POST, GET, OPTIONS",
        "Access-Control-Max-Age": "86400",
        "Vary": "Origin",
    }
    headers.update(SECURITY_HEADERS)
    return headers


def install_cors(app: FastAPI, allowed_origins: Sequence[str],
                 production: bool) -> None:

    @app.middleware("http")
    async def _cors_and_security(request: Request, call_next):
        headers = cors_headers(
            request.headers.get("origin"), allowed_origins, production
        )
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=headers)
        response = await call_next(request)
        response.headers.update(headers)
        return response
