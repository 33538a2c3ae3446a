import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from swapmarket.errors import ErrorCategory, PaymentDeclined, SettlementFailed, SwapError
from swapmarket.schemas.common import ErrorResponse


log = logging.getLogger(__name__)

STATUS_BY_CATEGORY: dict[ErrorCategory, int] = {
    ErrorCategory.VALIDATION: 422,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.AUTHORIZATION: 403,
    ErrorCategory.BUSINESS: 409,
    ErrorCategory.INFRASTRUCTURE: 503,
    ErrorCategory.CONSISTENCY: 500,
}

_missing = set(ErrorCategory) - set(STATUS_BY_CATEGORY)
if _missing:
    raise RuntimeError(f"no HTTP status mapped for error categories: {sorted(c.value for c in _missing)}")


def status_for(exc: SwapError) -> int:
    cause = exc.cause if isinstance(exc, SettlementFailed) else exc
    if isinstance(cause, PaymentDeclined):
        return 402
    return STATUS_BY_CATEGORY[exc.category]


async def swap_error_handler(request: Request, exc: SwapError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        log.warning("%s %s failed: %s (%s)", request.method, request.url.path, exc.code, exc.message)
    body = ErrorResponse(**exc.to_dict())
    headers = {"Retry-After": "5"} if exc.retryable and status == 503 else None
    return JSONResponse(status_code=status, content=jsonable_encoder(body), headers=headers)


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SwapError, swap_error_handler)
