from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

# Razorpay Checkout loads its script and iframe from checkout.razorpay.com and
# talks to api.razorpay.com; Supabase serves avatars and the auth endpoints.
_CONTENT_SECURITY_POLICY = "; ".join([
    "default-src 'self'",
    "script-src 'self' https://checkout.razorpay.com",
    "style-src 'self' 'unsafe-inline'",
    "img-src 'self' data: blob: https:",
    "connect-src 'self' https://api.razorpay.com https://*.supabase.co",
    "frame-src https://api.razorpay.com https://checkout.razorpay.com",
    "font-src 'self'",
    "frame-ancestors 'none'",
])

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=(), payment=(self)",
    "Content-Security-Policy": _CONTENT_SECURITY_POLICY,
}

_HSTS_VALUE = "max-age=31536000; includeSubDomains"


def is_https_request(request: Request) -> bool:
    return request.url.scheme == "https" or request.headers.get("x-forwarded-proto", "") == "https"


def apply_security_headers(response: Response, is_https: bool) -> None:
    for name, value in _SECURITY_HEADERS.items():
        response.headers[name] = value
    if is_https:
        response.headers["Strict-Transport-Security"] = _HSTS_VALUE


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds security headers to every response that passes through the app.

    Unhandled-exception 500s are rendered outside this middleware, so the
    error handler applies the same headers itself.
    """

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        apply_security_headers(response, is_https=is_https_request(request))
        return response
