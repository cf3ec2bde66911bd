from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from contextvars import ContextVar

import logging
import uuid

# ContextVars read by the logging filter
request_id_context: ContextVar[str] = ContextVar("request_id", default="N/A")
session_id_context: ContextVar[str] = ContextVar("session_id", default="-")

logger = logging.getLogger(__name__)

SESSION_HEADER = "X-Session-ID"

# --- Middleware Implementation ---

class RequestIDMiddleware(BaseHTTPMiddleware):
    @classmethod
    def request_id_context(cls):
        return request_id_context

    @classmethod
    def session_id_context(cls):
        return session_id_context

    async def dispatch(self, request: Request, call_next):

        # Generate a unique ID (shortened for readability in logs)
        new_request_id = str(uuid.uuid4())[:8]

        # Store the tokens to be used for reset later
        token = request_id_context.set(new_request_id)
        session_token = session_id_context.set(request.headers.get(SESSION_HEADER, "-"))

        try:
            response = await call_next(request)

            response.headers["X-Request-ID"] = new_request_id

        except Exception as e:
            # Log any exceptions with the context intact
            logger.exception("Unhandled error during %s %s.", request.method, request.url.path)
            raise e

        finally:
            # Reset the context variables when the request is done
            session_id_context.reset(session_token)
            request_id_context.reset(token)

        return response
