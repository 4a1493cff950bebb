"""
api/security.py -- Security headers added to every response.

  Content-Security-Policy        self + the CDNs the frontend pages load
  X-Frame-Options                DENY (plus frame-ancestors 'none')
  X-Content-Type-Options         nosniff
  X-XSS-Protection               1; mode=block (legacy browsers)
  Referrer-Policy                strict-origin-when-cross-origin
  Permissions-Policy             no geolocation / microphone / camera
  Cache-Control/Pragma/Expires   API responses are never cached
  Strict-Transport-Security      only when the request arrived over HTTPS

CORS is not handled here; api/main.py mounts Starlette's CORSMiddleware.
"""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

CONTENT_SECURITY_POLICY = (
    "default-src 'self'; "
    "script-src 'self' 'unsafe-inline' https://cdn.tailwindcss.com https://fonts.googleapis.com; "
    "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com https://cdn.tailwindcss.com; "
    "font-src 'self' https://fonts.gstatic.com data:; "
    "img-src 'self' data: https:; "
    "connect-src 'self' https:; "
    "frame-ancestors 'none'; "
    "base-uri 'self'; "
    "form-action 'self'"
)

STATIC_HEADERS = {
    "Content-Security-Policy": CONTENT_SECURITY_POLICY,
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "Thu, 01 Jan 1970 00:00:00 GMT",
}

HSTS_VALUE = "max-age=31536000; includeSubDomains"


def is_https(request: Request) -> bool:
    if request.url.scheme == "https":
        return True
    return request.headers.get("x-forwarded-proto", "").lower() == "https"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to responses."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        for name, value in STATIC_HEADERS.items():
            response.headers[name] = value
        if is_https(request):
            response.headers["Strict-Transport-Security"] = HSTS_VALUE
        return response
