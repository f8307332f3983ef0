from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from pricing_app.auth import SessionUser, get_db_session, require_admin, require_user
from pricing_app.db_models import LOG_TYPES
from pricing_app.log_queries import (
    LogFilters,
    delete_logs_before,
    fetch_logs,
    search_logs,
    sum_usage,
)
from pricing_app.responses import ApiEnvelope, api_success, get_pricing_service
from ratio_engine.service import PricingService

router = APIRouter(prefix="/api/log", tags=["log"])


def log_filters(
    type: int = Query(default=0, ge=0),
    start_timestamp: int = Query(default=0, ge=0),
    end_timestamp: int = Query(default=0, ge=0),
    model_name: str = "",
    username: str = "",
    token_name: str = "",
    channel: int = Query(default=0, ge=0),
    group: str = "",
) -> LogFilters:
    # 0 matches every type.
    if type not in LOG_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"unknown log type {type}",
        )
    return LogFilters(
        log_type=type,
        start_timestamp=start_timestamp,
        end_timestamp=end_timestamp,
        model_name=model_name,
        username=username,
        token_name=token_name,
        channel=channel,
        group=group,
    )


def _page_payload(items: list, total: int, page: int, page_size: int) -> dict:
    return {"items": items, "total": total, "page": page, "page_size": page_size}


@router.get("/", response_model=ApiEnvelope)
async def get_all_logs(
    p: int = Query(default=1, ge=1),
    page_size: int = Query(default=10, ge=1, le=100),
    filters: LogFilters = Depends(log_filters),
    _: SessionUser = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
) -> ApiEnvelope:
    items, total = await fetch_logs(
        session, filters, offset=(p - 1) * page_size, limit=page_size
    )
    return api_success(_page_payload(items, total, p, page_size))


@router.get("/self", response_model=ApiEnvelope)
async def get_my_logs(
    p: int = Query(default=1, ge=1),
    page_size: int = Query(default=10, ge=1, le=100),
    filters: LogFilters = Depends(log_filters),
    current_user: SessionUser = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
) -> ApiEnvelope:
    items, total = await fetch_logs(
        session,
        filters,
        offset=(p - 1) * page_size,
        limit=page_size,
        user_id=current_user.id,
    )
    return api_success(_page_payload(items, total, p, page_size))


@router.get("/search", response_model=ApiEnvelope)
async def search_all_logs(
    keyword: str = "",
    _: SessionUser = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
) -> ApiEnvelope:
    return api_success(await search_logs(session, keyword))


@router.get("/self/search", response_model=ApiEnvelope)
async def search_my_logs(
    keyword: str = "",
    current_user: SessionUser = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
) -> ApiEnvelope:
    return api_success(await search_logs(session, keyword, user_id=current_user.id))


@router.get("/stat", response_model=ApiEnvelope)
async def get_logs_stat(
    filters: LogFilters = Depends(log_filters),
    _: SessionUser = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
) -> ApiEnvelope:
    return api_success(await sum_usage(session, filters))


@router.get("/self/stat", response_model=ApiEnvelope)
async def get_my_logs_stat(
    filters: LogFilters = Depends(log_filters),
    current_user: SessionUser = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
) -> ApiEnvelope:
    return api_success(await sum_usage(session, filters, user_id=current_user.id))


@router.delete("/", response_model=ApiEnvelope)
async def delete_history_logs(
    request: Request,
    target_timestamp: int = 0,
    _: SessionUser = Depends(require_admin),
    service: PricingService = Depends(get_pricing_service),
) -> ApiEnvelope:
    if target_timestamp <= 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="target timestamp is required",
        )
    deleted = await delete_logs_before(
        request.app.state.db_session_maker, target_timestamp
    )
    service.invalidate_rankings()
    return api_success(deleted)


@router.get("/ranking", response_model=ApiEnvelope)
async def get_ranking_stats(
    current_user: SessionUser = Depends(require_user),
    service: PricingService = Depends(get_pricing_service),
) -> ApiEnvelope:
    return api_success(await service.get_ranking_snapshot(current_user.is_privileged))
