"""
统一异常处理中间件
业务异常、请求参数错误和未处理异常统一转换为 CommonResponse 结构
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from kiyoshi.exceptions import CleanerException
from kiyoshi.models import CommonResponse

logger = logging.getLogger(__name__)


def _error_response(status_code: int, code: str, message: str, data=None) -> JSONResponse:
    body = CommonResponse(code=code, message=message, data=data)
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def cleaner_exception_handler(request: Request, exc: CleanerException) -> JSONResponse:
    """业务异常: 使用异常自带的状态码和错误码"""
    logger.warning(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    return _error_response(exc.status_code, exc.code, exc.message, exc.details or None)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """请求参数校验失败"""
    errors = [
        {"loc": ".".join(str(p) for p in item["loc"]), "msg": item["msg"]}
        for item in exc.errors()
    ]
    logger.info(f"{request.method} {request.url.path} -> invalid request: {errors}")
    return _error_response(422, "validation_error", "请求参数错误", errors)


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"{request.method} {request.url.path} -> unhandled {type(exc).__name__}: {exc}", exc_info=True)
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error", "服务器内部错误")


def register_exception_handlers(app: FastAPI):
    """注册异常处理器"""
    app.add_exception_handler(CleanerException, cleaner_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
