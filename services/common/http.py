"""
Common: HTTP エラー変換

パイプラインの例外を {"error": ...} 形式の JSON レスポンスに変換する。
どのサービスも同じ形式でエラーを返す。
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import errors

logger = logging.getLogger(__name__)


def error_response(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(errors.ValidationError)
    async def _validation_error(_request: Request, exc: errors.ValidationError):
        return error_response(400, exc.message, field=exc.field)

    @app.exception_handler(RequestValidationError)
    async def _invalid_payload(_request: Request, exc: RequestValidationError):
        return error_response(400, "Invalid request payload")

    @app.exception_handler(errors.NotFoundError)
    async def _not_found(_request: Request, exc: errors.NotFoundError):
        return error_response(404, str(exc))

    @app.exception_handler(errors.PersistenceError)
    async def _persistence_error(request: Request, exc: errors.PersistenceError):
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return error_response(500, str(exc))
