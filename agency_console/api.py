"""HTTP API through which the console UI drives account lifecycle changes."""
from __future__ import annotations

import asyncio
import functools
import logging
from contextlib import suppress
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import anyio
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, WebSocket, status
from pydantic import BaseModel, Field, field_validator
from starlette.websockets import WebSocketDisconnect, WebSocketState

from .config import ConsoleSettings, load_settings
from .database import (
    AccountNotFoundError,
    Database,
    DuplicateAccountError,
    StaleAccountVersion,
    StoreError,
    resolve_database_path,
)
from .identity import IdentityProviderError
from .models import Account, ActivityLogEntry, ChangeEvent, Role
from .routing import resolve_destination
from .security import AdminTokenAuth
from .service import InconsistentStateError, LifecycleService
from .transitions import LastAdminProtected, TransitionError

logger = logging.getLogger("agency_console.api")


class AccountResponse(BaseModel):
    id: int
    user_id: str
    user_name: Optional[str]
    email: Optional[str]
    role: Role
    approval_status: str
    status: Optional[str]
    status_reason: Optional[str]
    employee_id: Optional[str]
    joining_date: Optional[date]
    hold_days: Optional[int]
    hold_start_date: Optional[datetime]
    hold_end_date: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    version: int


class AccountListResponse(BaseModel):
    revision: int
    accounts: List[AccountResponse]


class RegisterAccountRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    user_name: Optional[str] = Field(default=None, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    role: Role = Role.EMPLOYEE

    @field_validator("user_id")
    @classmethod
    def _normalize_user_id(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("user_id must not be empty")
        return stripped


class ReasonRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=2000)


class HoldRequest(ReasonRequest):
    days: Optional[int] = None
    until: Optional[datetime] = None


class RoleRequest(BaseModel):
    role: Role


class DestinationResponse(BaseModel):
    destination: str
    path: str
    hold_remaining: Optional[str] = None


class ActivityEntryResponse(BaseModel):
    id: Optional[int]
    action: str
    actor_id: Optional[str]
    previous_status: Optional[str]
    new_status: Optional[str]
    previous_role: Optional[Role]
    new_role: Optional[Role]
    reason: Optional[str]
    hold_days: Optional[int]
    hold_end_date: Optional[datetime]
    created_at: datetime


class ActivityLogResponse(BaseModel):
    user_id: str
    entries: List[ActivityEntryResponse]


def account_to_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        user_id=account.user_id,
        user_name=account.user_name,
        email=account.email,
        role=account.role,
        approval_status=account.approval_status.value,
        status=account.status.value if account.status else None,
        status_reason=account.status_reason,
        employee_id=account.employee_id,
        joining_date=account.joining_date,
        hold_days=account.hold_days,
        hold_start_date=account.hold_start_date,
        hold_end_date=account.hold_end_date,
        created_at=account.created_at,
        updated_at=account.updated_at,
        version=account.version,
    )


def entry_to_response(entry: ActivityLogEntry) -> ActivityEntryResponse:
    return ActivityEntryResponse(
        id=entry.id,
        action=entry.action,
        actor_id=entry.actor_id,
        previous_status=entry.previous_status,
        new_status=entry.new_status,
        previous_role=entry.previous_role,
        new_role=entry.new_role,
        reason=entry.reason,
        hold_days=entry.hold_days,
        hold_end_date=entry.hold_end_date,
        created_at=entry.created_at,
    )


async def send_websocket_json(websocket: WebSocket, payload: Dict[str, Any]) -> None:
    """Safely send a JSON payload to a websocket client."""

    if websocket.client_state == WebSocketState.DISCONNECTED:
        return
    with suppress(Exception):
        await websocket.send_json(payload)


def _lifecycle_error(exc: Exception) -> HTTPException:
    """Translate engine and store failures into HTTP errors."""

    if isinstance(exc, LastAdminProtected):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(exc), "code": exc.code},
        )
    if isinstance(exc, TransitionError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": str(exc), "code": exc.code},
        )
    if isinstance(exc, AccountNotFoundError):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"message": str(exc), "code": "not_found"},
        )
    if isinstance(exc, (StaleAccountVersion, DuplicateAccountError)):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(exc), "code": "conflict"},
        )
    if isinstance(exc, InconsistentStateError):
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"message": str(exc), "code": "inconsistent_state"},
        )
    if isinstance(exc, (StoreError, IdentityProviderError)):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"message": str(exc), "code": "unavailable", "retryable": True},
        )
    raise exc


def create_app(
    *,
    database: Database | None = None,
    service: LifecycleService | None = None,
    settings: ConsoleSettings | None = None,
    auth: AdminTokenAuth | None = None,
) -> FastAPI:
    if settings is None:
        settings = service.settings if service is not None else load_settings()

    if service is not None:
        database = service.database
    else:
        if database is None:
            database = Database(settings.database_path or resolve_database_path(None))
            database.initialize()
        service = LifecycleService(database, settings=settings)

    if auth is None:
        auth = AdminTokenAuth(settings.api_tokens, database)

    app = FastAPI(
        title="Agency Console",
        description="Account lifecycle API for the agency CRM operator console",
        version="1.0.0",
    )
    app.state.database = database
    app.state.service = service

    async def get_admin(request: Request) -> Account:
        return await auth(request)

    def get_service() -> LifecycleService:
        return service

    @app.get("/healthz")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    router = APIRouter(prefix="/v1/accounts")

    @router.get("", response_model=AccountListResponse)
    async def list_accounts(
        _: Account = Depends(get_admin),
        svc: LifecycleService = Depends(get_service),
    ) -> AccountListResponse:
        try:
            listing = svc.list_accounts()
        except StoreError as exc:
            raise _lifecycle_error(exc) from exc
        return AccountListResponse(
            revision=listing.revision,
            accounts=[account_to_response(account) for account in listing.accounts],
        )

    @router.post("", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
    async def register_account(
        payload: RegisterAccountRequest,
        _: Account = Depends(get_admin),
        svc: LifecycleService = Depends(get_service),
    ) -> AccountResponse:
        try:
            account = svc.register(
                payload.user_id,
                user_name=payload.user_name,
                email=payload.email,
                role=payload.role,
            )
        except (StoreError, ValueError) as exc:
            if isinstance(exc, StoreError):
                raise _lifecycle_error(exc) from exc
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"message": str(exc), "code": "invalid_account"},
            ) from exc
        return account_to_response(account)

    @router.get("/{user_id}", response_model=AccountResponse)
    async def read_account(
        user_id: str,
        _: Account = Depends(get_admin),
        svc: LifecycleService = Depends(get_service),
    ) -> AccountResponse:
        try:
            account = svc.require_account(user_id)
        except StoreError as exc:
            raise _lifecycle_error(exc) from exc
        return account_to_response(account)

    @router.get("/{user_id}/destination", response_model=DestinationResponse)
    async def read_destination(
        user_id: str,
        _: Account = Depends(get_admin),
        svc: LifecycleService = Depends(get_service),
    ) -> DestinationResponse:
        try:
            account = svc.get_account(user_id)
        except StoreError as exc:
            raise _lifecycle_error(exc) from exc
        destination = resolve_destination(account)
        return DestinationResponse(
            destination=destination.value,
            path=destination.path,
            hold_remaining=svc.hold_countdown(account),
        )

    @router.get("/{user_id}/activity", response_model=ActivityLogResponse)
    async def read_activity(
        user_id: str,
        limit: Optional[int] = Query(default=None, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
        _: Account = Depends(get_admin),
        svc: LifecycleService = Depends(get_service),
    ) -> ActivityLogResponse:
        try:
            svc.require_account(user_id)
            entries = svc.fetch_activity_log(user_id, limit=limit, offset=offset)
        except StoreError as exc:
            raise _lifecycle_error(exc) from exc
        return ActivityLogResponse(user_id=user_id, entries=[entry_to_response(entry) for entry in entries])

    @router.post("/{user_id}/approve", response_model=AccountResponse)
    async def approve_account(
        user_id: str,
        admin: Account = Depends(get_admin),
        svc: LifecycleService = Depends(get_service),
    ) -> AccountResponse:
        try:
            account = svc.approve(user_id, actor_id=admin.user_id)
        except (TransitionError, StoreError, InconsistentStateError) as exc:
            raise _lifecycle_error(exc) from exc
        return account_to_response(account)

    @router.post("/{user_id}/reject", response_model=AccountResponse)
    async def reject_account(
        user_id: str,
        payload: ReasonRequest,
        admin: Account = Depends(get_admin),
        svc: LifecycleService = Depends(get_service),
    ) -> AccountResponse:
        try:
            account = svc.reject(user_id, payload.reason, actor_id=admin.user_id)
        except (TransitionError, StoreError, InconsistentStateError) as exc:
            raise _lifecycle_error(exc) from exc
        return account_to_response(account)

    @router.post("/{user_id}/hold", response_model=AccountResponse)
    async def hold_account(
        user_id: str,
        payload: HoldRequest,
        admin: Account = Depends(get_admin),
        svc: LifecycleService = Depends(get_service),
    ) -> AccountResponse:
        try:
            account = svc.hold(
                user_id,
                payload.reason,
                actor_id=admin.user_id,
                days=payload.days,
                until=payload.until,
            )
        except (TransitionError, StoreError, InconsistentStateError) as exc:
            raise _lifecycle_error(exc) from exc
        return account_to_response(account)

    @router.post("/{user_id}/suspend", response_model=AccountResponse)
    async def suspend_account(
        user_id: str,
        payload: ReasonRequest,
        admin: Account = Depends(get_admin),
        svc: LifecycleService = Depends(get_service),
    ) -> AccountResponse:
        try:
            account = svc.suspend(user_id, payload.reason, actor_id=admin.user_id)
        except (TransitionError, StoreError, InconsistentStateError) as exc:
            raise _lifecycle_error(exc) from exc
        return account_to_response(account)

    @router.post("/{user_id}/activate", response_model=AccountResponse)
    async def activate_account(
        user_id: str,
        admin: Account = Depends(get_admin),
        svc: LifecycleService = Depends(get_service),
    ) -> AccountResponse:
        try:
            account = svc.activate(user_id, actor_id=admin.user_id)
        except (TransitionError, StoreError, InconsistentStateError) as exc:
            raise _lifecycle_error(exc) from exc
        return account_to_response(account)

    @router.post("/{user_id}/role", response_model=AccountResponse)
    async def change_account_role(
        user_id: str,
        payload: RoleRequest,
        admin: Account = Depends(get_admin),
        svc: LifecycleService = Depends(get_service),
    ) -> AccountResponse:
        try:
            account = svc.change_role(user_id, payload.role, actor_id=admin.user_id)
        except (TransitionError, StoreError, InconsistentStateError) as exc:
            raise _lifecycle_error(exc) from exc
        return account_to_response(account)

    @router.delete("/{user_id}", response_model=AccountResponse)
    async def delete_account(
        user_id: str,
        reason: Optional[str] = Query(default=None, max_length=2000),
        admin: Account = Depends(get_admin),
        svc: LifecycleService = Depends(get_service),
    ) -> AccountResponse:
        try:
            # Revoking the credential is a blocking HTTP call.
            removed = await anyio.to_thread.run_sync(
                functools.partial(svc.delete, user_id, reason, actor_id=admin.user_id)
            )
        except (TransitionError, StoreError, InconsistentStateError, IdentityProviderError) as exc:
            raise _lifecycle_error(exc) from exc
        return account_to_response(removed)

    app.include_router(router)

    @app.websocket("/v1/accounts/changes")
    async def account_changes(websocket: WebSocket) -> None:
        header = websocket.headers.get("authorization") or ""
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            await websocket.close(code=4401)
            return
        try:
            admin = auth.authenticate(token.strip())
        except HTTPException:
            await websocket.close(code=4403)
            return

        await websocket.accept()
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()

        def enqueue(event: ChangeEvent) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, event)

        unsubscribe = service.subscribe_account_changes(enqueue, enqueue, enqueue)
        logger.info("Change feed opened for %s", admin.user_id)
        cancel_exc = anyio.get_cancelled_exc_class()
        # Events committed after this message are guaranteed to be delivered.
        await send_websocket_json(websocket, {"type": "ready"})

        try:
            async with anyio.create_task_group() as task_group:

                async def pump_feed() -> None:
                    try:
                        while True:
                            event = await queue.get()
                            await send_websocket_json(websocket, {"type": "change", **event.to_dict()})
                    except (WebSocketDisconnect, cancel_exc):
                        pass
                    finally:
                        task_group.cancel_scope.cancel()

                async def pump_client() -> None:
                    try:
                        while True:
                            message = await websocket.receive()
                            if message["type"] == "websocket.disconnect":
                                break
                    except (WebSocketDisconnect, cancel_exc):
                        pass
                    finally:
                        task_group.cancel_scope.cancel()

                task_group.start_soon(pump_feed)
                task_group.start_soon(pump_client)
        finally:
            unsubscribe()
            logger.info("Change feed closed for %s", admin.user_id)
            if websocket.client_state != WebSocketState.DISCONNECTED:
                with suppress(Exception):
                    await websocket.close()

    return app


__all__ = ["create_app", "account_to_response", "send_websocket_json"]
