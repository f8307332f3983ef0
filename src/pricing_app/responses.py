from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ratio_engine.service import PricingService


class ApiEnvelope(BaseModel):
    success: bool
    message: str = ""
    data: Any = None


def api_success(data: Any = None) -> ApiEnvelope:
    return ApiEnvelope(success=True, data=data)


def api_failure(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ApiEnvelope(success=False, message=message).model_dump(),
    )


def get_pricing_service(request: Request) -> PricingService:
    return request.app.state.pricing_service
