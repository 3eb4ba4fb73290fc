from starlette.requests import Request

from app.core.errors import error_response
from app.core.settings import settings


# Endpoints only other services may call (the derived-profile update trigger).
INTERNAL_PATH_PREFIXES = ("/adaptive/update",)


async def internal_api_key_middleware(request: Request, call_next):
    if settings.internal_auth_enabled:
        path = request.url.path
        if any(path.startswith(prefix) for prefix in INTERNAL_PATH_PREFIXES):
            provided = request.headers.get("x-api-key", "")
            if not settings.internal_api_key or provided != settings.internal_api_key:
                return error_response(
                    request,
                    code="unauthorized",
                    message="Unauthorized: invalid or missing x-api-key",
                    status_code=401,
                )
    return await call_next(request)
