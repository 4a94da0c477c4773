"""Transaction submission, paginated history and the PDF export of that history."""

import asyncio
import datetime as dt
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status
from starlette.concurrency import run_in_threadpool

from .. import aggregator, models, reports, schemas
from ..auth import SIGNED_OUT, AuthHandler, get_current_user
from ..cache import ReferenceDataCache
from ..commands import TransactionCommand
from ..config import FETCH_TIMEOUT_S
from ..dashboard import DashboardService, ViewRegistry
from ..deps import get_cache, get_commands, get_dashboard_service, get_fetcher, get_procedure, get_views
from ..errors import FetchTimeout, LedgerError, TransactionErrorKind, TransactionRejected, api_error
from ..ledger import LedgerFetcher, TransactionFilters, bounded
from ..procedures import InventoryProcedure
from ..rbac import require_role

router = APIRouter()

logger = logging.getLogger("lobster-dashboard.transactions")

ALL = "all"

REJECTION_STATUS: dict[TransactionErrorKind, int] = {
    TransactionErrorKind.QUANTITY_INVALID: status.HTTP_422_UNPROCESSABLE_ENTITY,
    TransactionErrorKind.INVALID_TRANSACTION_TYPE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    TransactionErrorKind.DESTINATION_REQUIRED: status.HTTP_422_UNPROCESSABLE_ENTITY,
    TransactionErrorKind.UNKNOWN_REFERENCE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    TransactionErrorKind.INVENTORY_MISSING: status.HTTP_409_CONFLICT,
    TransactionErrorKind.INSUFFICIENT_INVENTORY: status.HTTP_409_CONFLICT,
    TransactionErrorKind.SUBMISSION_IN_PROGRESS: status.HTTP_409_CONFLICT,
    TransactionErrorKind.PROCEDURE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    TransactionErrorKind.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
    TransactionErrorKind.OTHER: status.HTTP_502_BAD_GATEWAY,
}


class HistoryQuery:
    """Filters shared by the history listing and its export."""

    def __init__(
        self,
        start_date: Optional[dt.date] = Query(None),
        end_date: Optional[dt.date] = Query(None),
        lobster_type: str = Query(ALL),
        transaction_type: str = Query(ALL),
    ) -> None:
        if start_date and end_date and start_date > end_date:
            raise api_error(
                status.HTTP_422_UNPROCESSABLE_ENTITY,
                "transactions.invalid_range",
                "start_date must not be after end_date",
            )
        self.start_date = start_date
        self.end_date = end_date
        self.lobster_type = None if lobster_type.strip().lower() == ALL else lobster_type.strip()
        self.transaction_type = None if transaction_type.strip().lower() == ALL else transaction_type.strip().upper()

    def report_filters(self) -> reports.ReportFilters:
        return reports.ReportFilters(
            start_date=self.start_date,
            end_date=self.end_date,
            lobster_type=self.lobster_type,
            transaction_type=self.transaction_type,
        )


async def _resolve_type_id(query: HistoryQuery, cache: ReferenceDataCache) -> tuple[bool, Optional[uuid.UUID]]:
    """Whether the filters can match anything, and the lobster type id to filter by."""

    if query.transaction_type is not None and query.transaction_type not in models.TRANSACTION_TYPES:
        return False, None
    if query.lobster_type is None:
        return True, None
    found = await bounded(cache.find_lobster_type(query.lobster_type), FETCH_TIMEOUT_S, "lobster types")
    if found is None:
        return False, None
    return True, found.id


def _entries(
    rows: list[schemas.TransactionRow], type_names: dict[uuid.UUID, str], weight_ranges: dict[uuid.UUID, str]
) -> list[schemas.TransactionEntry]:
    return [
        schemas.TransactionEntry(
            id=row.id,
            transaction_type=row.transaction_type,
            lobster_type=type_names.get(row.type_id, aggregator.UNKNOWN),
            weight_range=weight_ranges.get(row.weight_class_id, aggregator.UNKNOWN),
            quantity=row.quantity,
            transaction_date=row.transaction_date,
            destination=row.destination,
            notes=row.notes,
        )
        for row in rows
    ]


async def _names(cache: ReferenceDataCache) -> tuple[dict[uuid.UUID, str], dict[uuid.UUID, str]]:
    return await asyncio.gather(
        bounded(cache.type_names(), FETCH_TIMEOUT_S, "lobster types"),
        bounded(cache.weight_ranges(), FETCH_TIMEOUT_S, "weight classes"),
    )


def _ledger_failure(exc: LedgerError):
    if isinstance(exc, FetchTimeout):
        return api_error(status.HTTP_504_GATEWAY_TIMEOUT, "ledger.timeout", str(exc))
    return api_error(status.HTTP_503_SERVICE_UNAVAILABLE, "ledger.unavailable", str(exc))


@router.get("/", response_model=schemas.TransactionPage)
async def list_transactions(
    query: HistoryQuery = Depends(),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    cache: ReferenceDataCache = Depends(get_cache),
    fetcher: LedgerFetcher = Depends(get_fetcher),
    user=Depends(get_current_user),
) -> schemas.TransactionPage:
    require_role(user, "viewer")
    try:
        can_match, type_id = await _resolve_type_id(query, cache)
        if not can_match:
            return schemas.TransactionPage(items=[], total=0, page=page, per_page=per_page, incoming=0, outgoing=0)

        # Totals cover the date range and lobster type only, whatever the transaction type filter.
        (rows, total), flow_rows, (type_names, weight_ranges) = await asyncio.gather(
            bounded(
                fetcher.fetch_transaction_page(
                    query.start_date,
                    query.end_date,
                    TransactionFilters(lobster_type_id=type_id, transaction_type=query.transaction_type),
                    page,
                    per_page,
                ),
                FETCH_TIMEOUT_S,
                "transaction page",
            ),
            bounded(
                fetcher.fetch_transactions_in_range(
                    query.start_date, query.end_date, TransactionFilters(lobster_type_id=type_id)
                ),
                FETCH_TIMEOUT_S,
                "transaction totals",
            ),
            _names(cache),
        )
    except LedgerError as exc:
        raise _ledger_failure(exc) from exc

    totals = aggregator.flow_totals(flow_rows)
    return schemas.TransactionPage(
        items=_entries(rows, type_names, weight_ranges),
        total=total,
        page=page,
        per_page=per_page,
        incoming=totals.incoming,
        outgoing=totals.outgoing,
    )


@router.get("/export", response_class=Response)
async def export_transactions(
    query: HistoryQuery = Depends(),
    cache: ReferenceDataCache = Depends(get_cache),
    fetcher: LedgerFetcher = Depends(get_fetcher),
    user=Depends(get_current_user),
) -> Response:
    require_role(user, "viewer")
    try:
        can_match, type_id = await _resolve_type_id(query, cache)
        if not can_match:
            raise api_error(status.HTTP_404_NOT_FOUND, "report.empty", "No transactions match the filters")
        rows, flow_rows, (type_names, weight_ranges) = await asyncio.gather(
            bounded(
                fetcher.fetch_transactions_in_range(
                    query.start_date,
                    query.end_date,
                    TransactionFilters(lobster_type_id=type_id, transaction_type=query.transaction_type),
                    ordered=True,
                ),
                FETCH_TIMEOUT_S,
                "transactions for export",
            ),
            bounded(
                fetcher.fetch_transactions_in_range(
                    query.start_date, query.end_date, TransactionFilters(lobster_type_id=type_id)
                ),
                FETCH_TIMEOUT_S,
                "transaction totals",
            ),
            _names(cache),
        )
    except LedgerError as exc:
        raise _ledger_failure(exc) from exc

    if not rows:
        raise api_error(status.HTTP_404_NOT_FOUND, "report.empty", "No transactions match the filters")

    filters = query.report_filters()
    pdf = await run_in_threadpool(
        reports.render_transactions_pdf,
        _entries(rows, type_names, weight_ranges),
        filters,
        aggregator.flow_totals(flow_rows),
    )
    logger.info("Exported %d transactions for %s", len(rows), user.username)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{reports.report_filename(filters)}"'},
    )


def forget_commands_on_sign_out(commands: dict[uuid.UUID, TransactionCommand]) -> AuthHandler:
    """Auth-state handler that drops a user's submission command when they sign out."""

    async def handler(event: str, user_id: uuid.UUID) -> None:
        if event == SIGNED_OUT:
            commands.pop(user_id, None)

    return handler


def _command_for(
    user_id: uuid.UUID,
    commands: dict[uuid.UUID, TransactionCommand],
    fetcher: LedgerFetcher,
    cache: ReferenceDataCache,
    procedure: InventoryProcedure,
    views: ViewRegistry,
) -> TransactionCommand:
    command = commands.get(user_id)
    if command is None:
        command = TransactionCommand(fetcher, cache, procedure)

        async def refresh_views(receipt: schemas.TransactionReceipt) -> None:
            await views.refresh_user(user_id)

        command.on_success(refresh_views)
        commands[user_id] = command
    return command


@router.post("/", response_model=schemas.TransactionResult, status_code=status.HTTP_201_CREATED)
async def submit_transaction(
    payload: schemas.TransactionRequest,
    commands: dict = Depends(get_commands),
    cache: ReferenceDataCache = Depends(get_cache),
    fetcher: LedgerFetcher = Depends(get_fetcher),
    procedure: InventoryProcedure = Depends(get_procedure),
    views: ViewRegistry = Depends(get_views),
    service: DashboardService = Depends(get_dashboard_service),
    user=Depends(get_current_user),
) -> schemas.TransactionResult:
    require_role(user, "operator")
    command = _command_for(user.id, commands, fetcher, cache, procedure, views)
    try:
        receipt = await command.submit(payload)
    except TransactionRejected as exc:
        raise api_error(REJECTION_STATUS[exc.kind], f"transaction.{exc.kind.value}", exc.message) from exc

    try:
        stock = await service.build_stock_overview()
    except LedgerError as exc:
        # The write is committed; only the follow-up read failed.
        logger.warning("Stock overview after %s unavailable: %s", receipt.transaction_type, exc)
        stock = None
    return schemas.TransactionResult(receipt=receipt, stock=stock)
