# src/marketplace_bff/middleware.py

import re
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response as StarletteResponse

from .log import set_request_id

REQUEST_ID_HEADER = "X-Request-ID"
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9_\-]{1,64}$")


def _new_request_id() -> str:
    return uuid.uuid4().hex


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Accepts a well-formed X-Request-ID from the caller or mints one, exposes it
    on request.state and to every log line, and echoes it on the response.
    """

    async def dispatch(self, request: Request, call_next):
        incoming = request.headers.get(REQUEST_ID_HEADER)
        rid = incoming if incoming and _VALID_REQUEST_ID.match(incoming) else _new_request_id()
        set_request_id(rid)
        request.state.request_id = rid
        try:
            response: StarletteResponse = await call_next(request)
            response.headers.setdefault(REQUEST_ID_HEADER, rid)
            return response
        finally:
            set_request_id(None)
