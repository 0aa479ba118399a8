import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException


logger = logging.getLogger(__name__)


class AppError(Exception):

    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_detail(self) -> Any:
        return self.message


class ValidationError(AppError):
    """Rejected before anything is persisted; never retried."""


class InvalidMessageError(ValidationError):
    pass


class InvalidGroupError(ValidationError):
    pass


class NotFoundError(AppError):

    status_code = 404


class NotMemberError(AppError):

    status_code = 403


class PartialWriteError(AppError):
    """The message was stored but the conversation update did not land.

    Resending with the same ``client_message_id`` only completes the append.
    """

    status_code = 503

    def __init__(self, message: str, message_id: str, conversation_id: str, client_message_id: str):
        super().__init__(message)
        self.message_id = message_id
        self.conversation_id = conversation_id
        self.client_message_id = client_message_id

    def to_detail(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "message_id": self.message_id,
            "conversation_id": self.conversation_id,
            "client_message_id": self.client_message_id,
            "retryable": True,
        }


class ConsistencyViolation(Exception):
    """More than one direct conversation exists for the same pair.

    Handled by the resolver's merge; never reaches a caller.
    """

    def __init__(self, pair: List[str], records: List[Dict[str, Any]]):
        self.pair = pair
        self.records = records
        super().__init__(f"{len(records)} direct conversations for {pair[0]} & {pair[1]}")


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(_: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("%s: %s", type(exc).__name__, exc.message)
        else:
            logger.info("%s: %s", type(exc).__name__, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})

    @app.exception_handler(PydanticValidationError)
    async def validation_error_handler(_: Request, exc: PydanticValidationError):
        return JSONResponse(status_code=422, content={"detail": exc.errors(include_url=False, include_context=False)})

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=getattr(exc, "headers", None))
