import json

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from pricing_app.auth import SessionUser, get_db_session, require_admin
from pricing_app.options import OPTION_DYNAMIC_GROUP_RATIO, OptionRegistry
from pricing_app.responses import ApiEnvelope, api_success, get_pricing_service
from ratio_engine.service import PricingService

router = APIRouter(prefix="/api/admin", tags=["admin"])


def get_option_registry(request: Request) -> OptionRegistry:
    return request.app.state.option_registry


async def _read_payload(request: Request) -> str:
    return (await request.body()).decode("utf-8", errors="replace")


@router.get("/dynamic-ratio", response_model=ApiEnvelope)
async def get_dynamic_ratio_config(
    _: SessionUser = Depends(require_admin),
    service: PricingService = Depends(get_pricing_service),
) -> ApiEnvelope:
    return api_success(json.loads(service.get_dynamic_ratio_config_json()))


@router.post("/dynamic-ratio/validate", response_model=ApiEnvelope)
async def validate_dynamic_ratio_config(
    request: Request,
    _: SessionUser = Depends(require_admin),
    service: PricingService = Depends(get_pricing_service),
) -> ApiEnvelope:
    service.validate_dynamic_ratio_config_json(await _read_payload(request))
    return api_success()


@router.put("/dynamic-ratio", response_model=ApiEnvelope)
async def update_dynamic_ratio_config(
    request: Request,
    _: SessionUser = Depends(require_admin),
    registry: OptionRegistry = Depends(get_option_registry),
    session: AsyncSession = Depends(get_db_session),
) -> ApiEnvelope:
    await registry.save(session, OPTION_DYNAMIC_GROUP_RATIO, await _read_payload(request))
    return api_success()


@router.get("/options", response_model=ApiEnvelope)
async def list_options(
    _: SessionUser = Depends(require_admin),
    registry: OptionRegistry = Depends(get_option_registry),
) -> ApiEnvelope:
    return api_success({key: registry.dump(key) for key in registry.keys()})


@router.put("/options/{key}", response_model=ApiEnvelope)
async def update_option(
    key: str,
    request: Request,
    _: SessionUser = Depends(require_admin),
    registry: OptionRegistry = Depends(get_option_registry),
    session: AsyncSession = Depends(get_db_session),
) -> ApiEnvelope:
    await registry.save(session, key, await _read_payload(request))
    return api_success()
