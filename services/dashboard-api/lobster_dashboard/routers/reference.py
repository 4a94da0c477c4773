from fastapi import APIRouter, Depends, status

from .. import schemas
from ..auth import get_current_user
from ..cache import ReferenceDataCache
from ..config import FETCH_TIMEOUT_S
from ..deps import get_cache
from ..errors import FetchTimeout, LedgerError, api_error
from ..ledger import bounded
from ..rbac import require_role

router = APIRouter()


@router.get("/lobster-types", response_model=list[schemas.LobsterType])
async def list_lobster_types(
    cache: ReferenceDataCache = Depends(get_cache),
    user=Depends(get_current_user),
) -> list[schemas.LobsterType]:
    require_role(user, "viewer")
    try:
        return list(await bounded(cache.get_lobster_types(), FETCH_TIMEOUT_S, "lobster types"))
    except FetchTimeout as exc:
        raise api_error(status.HTTP_504_GATEWAY_TIMEOUT, "ledger.timeout", str(exc)) from exc
    except LedgerError as exc:
        raise api_error(status.HTTP_503_SERVICE_UNAVAILABLE, "ledger.unavailable", str(exc)) from exc


@router.get("/weight-classes", response_model=list[schemas.WeightClass])
async def list_weight_classes(
    cache: ReferenceDataCache = Depends(get_cache),
    user=Depends(get_current_user),
) -> list[schemas.WeightClass]:
    require_role(user, "viewer")
    try:
        return list(await bounded(cache.get_weight_classes(), FETCH_TIMEOUT_S, "weight classes"))
    except FetchTimeout as exc:
        raise api_error(status.HTTP_504_GATEWAY_TIMEOUT, "ledger.timeout", str(exc)) from exc
    except LedgerError as exc:
        raise api_error(status.HTTP_503_SERVICE_UNAVAILABLE, "ledger.unavailable", str(exc)) from exc


@router.post("/cache/clear", status_code=status.HTTP_204_NO_CONTENT)
async def clear_cache(
    cache: ReferenceDataCache = Depends(get_cache),
    user=Depends(get_current_user),
) -> None:
    require_role(user, "supervisor")
    cache.clear()
    return None
