from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from contextvars import ContextVar

import logging
import uuid

# Request ID shared with the logging filter
request_id_context: ContextVar[str] = ContextVar("request_id", default="N/A")

logger = logging.getLogger(__name__)


class RequestIDMiddleware(BaseHTTPMiddleware):
    @classmethod
    def request_id_context(cls):
        return request_id_context

    async def dispatch(self, request: Request, call_next):

        # Honour an upstream id, otherwise a short one is readable enough in logs
        new_request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]

        token = request_id_context.set(new_request_id)

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = new_request_id

        except Exception:
            logger.exception("Unhandled error during %s %s.", request.method, request.url.path)
            raise

        finally:
            # Reset the context variable when the request is done
            request_id_context.reset(token)

        return response
