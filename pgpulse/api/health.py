"""Health-check endpoint.

Load balancers and container health checks hit this endpoint to verify the
process is accepting HTTP connections.  It does not touch the database
pool: healthy means "serving", not "database reachable".
"""

from __future__ import annotations

from fastapi import APIRouter, Response

router = APIRouter(tags=["health"])


@router.api_route("/{full_path:path}", methods=["GET", "HEAD"], status_code=200)
async def health_check(full_path: str) -> Response:
    """Return 200 with an empty body for any GET (or HEAD) path."""
    return Response(status_code=200)
