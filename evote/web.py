"""
FastAPI glue shared by both services: error rendering, bearer credentials and
the response shapes both services agree on.

Every ``VotingError`` is answered as ``{"error": ..., "kind": ...}`` with the
error's own status code, and so are malformed requests (``InvalidRequest``,
422).  Anything else is logged with its traceback and answered as a generic
500; internals never reach the client.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .errors import InvalidRequest, InvalidToken, Unauthorized, VotingError
from .models import Position
from .security import decode_officer_token
from .services import Services

logger = logging.getLogger(__name__)


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return InvalidRequest.default_message
    first = errors[0]
    # drop the "body"/"query"/"path" prefix FastAPI puts on every location
    field = ".".join(str(part) for part in first.get("loc", ())[1:])
    return f"{field}: {first['msg']}" if field else first["msg"]


def install_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(VotingError)
    async def voting_error_handler(request: Request, exc: VotingError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        error = InvalidRequest(_validation_message(exc))
        logger.info(f"{request.method} {request.url.path} rejected: {error.message}")
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "kind": "Internal"},
        )


def position_out(position: Position) -> dict:
    """A position as both services list it."""
    return {
        "id": position.id,
        "name": position.name,
        "seats": position.seat_count,
        "constituency": position.constituency,
        "display_order": position.display_order,
    }


def bearer(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def get_services(request: Request) -> Services:
    return request.app.state.services


def ballot_token(request: Request) -> str:
    """Dependency: the ballot token presented as ``Authorization: Bearer``."""
    token = bearer(request)
    if token is None:
        raise InvalidToken("Ballot token required")
    return token


def officer_id(request: Request) -> str:
    """Dependency: the id of the returning officer presenting a valid JWT."""
    token = bearer(request)
    if token is None:
        raise Unauthorized()
    return decode_officer_token(token, get_services(request).settings.officer_jwt_secret)
