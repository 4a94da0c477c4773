from fastapi import APIRouter, Depends, Query, status

from .. import schemas
from ..auth import get_current_user
from ..cache import ReferenceDataCache
from ..config import FETCH_TIMEOUT_S
from ..dashboard import DashboardService
from ..deps import get_cache, get_dashboard_service, get_fetcher
from ..errors import FetchTimeout, LedgerError, api_error
from ..ledger import LedgerFetcher, bounded
from ..rbac import require_role

router = APIRouter()


@router.get("/", response_model=schemas.StockOverview)
async def list_stock(
    service: DashboardService = Depends(get_dashboard_service),
    user=Depends(get_current_user),
) -> schemas.StockOverview:
    require_role(user, "viewer")
    try:
        return await service.build_stock_overview()
    except FetchTimeout as exc:
        raise api_error(status.HTTP_504_GATEWAY_TIMEOUT, "ledger.timeout", str(exc)) from exc
    except LedgerError as exc:
        raise api_error(status.HTTP_503_SERVICE_UNAVAILABLE, "ledger.unavailable", str(exc)) from exc


@router.get("/available", response_model=schemas.AvailableStock)
async def available_stock(
    lobster_type: str = Query(..., min_length=1),
    weight_class: str = Query(..., min_length=1),
    cache: ReferenceDataCache = Depends(get_cache),
    fetcher: LedgerFetcher = Depends(get_fetcher),
    user=Depends(get_current_user),
) -> schemas.AvailableStock:
    require_role(user, "viewer")
    try:
        found_type = await cache.find_lobster_type(lobster_type)
        found_class = await cache.find_weight_class(weight_class)
        if found_type is None or found_class is None:
            raise api_error(status.HTTP_404_NOT_FOUND, "stock.unknown_reference", "Unknown lobster type or weight class")
        quantity = await bounded(
            fetcher.fetch_available_quantity(found_type.id, found_class.id), FETCH_TIMEOUT_S, "available quantity"
        )
    except LedgerError as exc:
        raise api_error(status.HTTP_503_SERVICE_UNAVAILABLE, "ledger.unavailable", str(exc)) from exc
    return schemas.AvailableStock(lobster_type=lobster_type, weight_class=weight_class, available=quantity or 0)


@router.get("/{lobster_type}/weight-classes", response_model=list[schemas.WeightClassQuantity])
async def weight_classes_for_type(
    lobster_type: str,
    include_empty: bool = Query(False),
    service: DashboardService = Depends(get_dashboard_service),
    user=Depends(get_current_user),
) -> list[schemas.WeightClassQuantity]:
    require_role(user, "viewer")
    try:
        breakdown = await service.weight_class_breakdown(lobster_type, include_empty=include_empty)
    except LedgerError as exc:
        raise api_error(status.HTTP_503_SERVICE_UNAVAILABLE, "ledger.unavailable", str(exc)) from exc
    if breakdown is None:
        raise api_error(status.HTTP_404_NOT_FOUND, "stock.unknown_type", f"Unknown lobster type {lobster_type}")
    return breakdown
