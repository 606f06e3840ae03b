from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


api_version = 'v1'


class CustomAuthMiddleWare(BaseHTTPMiddleware):
    """
    Rejects requests to protected routes that carry no Authorization header
    before they reach the routers. Service info, health and documentation
    endpoints stay public. Tokens themselves are validated by the route
    dependencies.
    """

    allowed_paths = [
        # Health endpoints
        "/health",
        "/favicon.ico",

        # Documentation endpoints
        "/openapi.json",
        f"/api/{api_version}/openapi.json",
        f"/api/{api_version}/docs",
        f"/api/{api_version}/redoc",
    ]

    async def dispatch(self, request: Request, call_next):
        # Always allow OPTIONS requests (CORS preflight)
        if request.method == "OPTIONS":
            return await call_next(request)

        path = request.url.path.rstrip("/")

        # Root endpoint
        if path == "":
            return await call_next(request)

        if any(path == prefix or path.startswith(prefix + "/") for prefix in self.allowed_paths):
            return await call_next(request)

        if "Authorization" not in request.headers:
            return JSONResponse(
                content={
                    "message": "Not authenticated! Please login again to proceed.",
                },
                status_code=401
            )

        return await call_next(request)
