import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from alertwatch.obs import new_request_id

log = logging.getLogger("uvicorn.access")


class RequestLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = new_request_id(request.headers.get("x-request-id"))
        start = time.perf_counter()
        rsp = await call_next(request)
        dur = int((time.perf_counter() - start) * 1000)
        rsp.headers["X-Request-ID"] = rid
        log.info("%s %s %s %dms rid=%s", request.method, request.url.path, rsp.status_code, dur, rid)
        return rsp
