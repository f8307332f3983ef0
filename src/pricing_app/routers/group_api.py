from dataclasses import asdict

from fastapi import APIRouter, Depends

from pricing_app.auth import SessionUser, require_admin, require_user
from pricing_app.responses import ApiEnvelope, api_success, get_pricing_service
from ratio_engine.service import PricingService

router = APIRouter(prefix="/api", tags=["group"])


@router.get("/group", response_model=ApiEnvelope)
async def list_groups(
    _: SessionUser = Depends(require_admin),
    service: PricingService = Depends(get_pricing_service),
) -> ApiEnvelope:
    return api_success(service.list_all_group_names())


@router.get("/user/self/groups", response_model=ApiEnvelope)
async def list_my_usable_groups(
    current_user: SessionUser = Depends(require_user),
    service: PricingService = Depends(get_pricing_service),
) -> ApiEnvelope:
    groups = await service.resolve_usable_groups(current_user.group, current_user.id)
    return api_success({name: asdict(group) for name, group in groups.items()})


@router.get("/user/self/groups/auto", response_model=ApiEnvelope)
async def list_my_auto_groups(
    current_user: SessionUser = Depends(require_user),
    service: PricingService = Depends(get_pricing_service),
) -> ApiEnvelope:
    return api_success(service.user_auto_groups(current_user.group))


@router.get("/user/self/groups/{group}/ratio", response_model=ApiEnvelope)
async def get_my_group_ratio(
    group: str,
    current_user: SessionUser = Depends(require_user),
    service: PricingService = Depends(get_pricing_service),
) -> ApiEnvelope:
    billed_group, ratio, is_dynamic = await service.resolve_group_ratio(
        current_user.group, group, current_user.id
    )
    return api_success({"group": billed_group, "ratio": ratio, "is_dynamic": is_dynamic})
