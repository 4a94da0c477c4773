import logging

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.websockets import WebSocketState

from .. import auth as auth_utils
from .. import schemas
from ..dashboard import DashboardService, ViewRegistry
from ..deps import get_dashboard_service, get_session, get_views
from ..errors import FetchTimeout, LedgerError, api_error
from ..rbac import require_role

router = APIRouter()

logger = logging.getLogger("lobster-dashboard.live")


@router.get("/", response_model=schemas.DashboardSnapshot)
async def get_dashboard(
    service: DashboardService = Depends(get_dashboard_service),
    user=Depends(auth_utils.get_current_user),
) -> schemas.DashboardSnapshot:
    require_role(user, "viewer")
    try:
        return await service.build_snapshot()
    except FetchTimeout as exc:
        raise api_error(status.HTTP_504_GATEWAY_TIMEOUT, "ledger.timeout", str(exc)) from exc
    except LedgerError as exc:
        raise api_error(status.HTTP_503_SERVICE_UNAVAILABLE, "ledger.unavailable", str(exc)) from exc


@router.websocket("/live")
async def live_dashboard(
    websocket: WebSocket,
    token: str = Query(...),
    session: AsyncSession = Depends(get_session),
    views: ViewRegistry = Depends(get_views),
) -> None:
    try:
        user = await auth_utils.authenticate_token(token, session)
    except auth_utils.InvalidToken:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    finally:
        await session.close()

    await websocket.accept()

    async def publish(snapshot: schemas.DashboardSnapshot) -> None:
        await websocket.send_json(snapshot.model_dump(mode="json"))

    async def on_closed() -> None:
        if (
            websocket.client_state == WebSocketState.CONNECTED
            and websocket.application_state == WebSocketState.CONNECTED
        ):
            # Expired sessions close with 1008 so the client signs in again.
            code = status.WS_1008_POLICY_VIOLATION if view.expired else status.WS_1000_NORMAL_CLOSURE
            await websocket.close(code=code)

    view = views.open_view(user.id, publish, on_closed=on_closed, expires_at=auth_utils.token_expires_at(token))
    try:
        await view.open()
        while not view.closed:
            message = await websocket.receive_text()
            if message.strip().lower() == "refresh":
                await view.refresh()
    except WebSocketDisconnect:
        logger.debug("Live dashboard for %s disconnected", user.username)
    finally:
        await views.close_view(view)
