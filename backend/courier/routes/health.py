"""
Courier Backend — Health Check Route
======================================

What:  Liveness endpoint for load balancers and container health checks.
How:   Answers 200 with an empty body. Checks nothing: if the process can
       route a request, it is alive.
Who:   Called periodically by the load balancer, unauthenticated.

The path is unversioned and exempt from request logging, origin policy
and session trace binding (see `create_app()` in main.py).
"""

from fastapi import APIRouter, Response


def build_health_router(path: str = "/") -> APIRouter:
    router = APIRouter(tags=["Health"])

    @router.api_route(
        path,
        methods=["GET", "HEAD"],
        include_in_schema=False,
        summary="Liveness probe",
    )
    async def health_check() -> Response:
        return Response(status_code=200)

    return router
