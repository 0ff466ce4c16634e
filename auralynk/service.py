"""HTTP API for the reader marketplace: profiles, bookings and session rooms."""

from __future__ import annotations

import asyncio
import logging
import math
from contextlib import suppress
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import anyio
from fastapi import Depends, FastAPI, HTTPException, Query, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from starlette.websockets import WebSocketDisconnect, WebSocketState

from .availability import group_slots_by_day
from .bookings import BookingService, BookingView
from .cache import AvailabilityCache
from .config import Settings, load_settings
from .database import Database, resolve_database_path
from .feed import BookingEvent, BookingFeed
from .models import Booking, BookingConflictError, BookingStatus, User
from .notifier import ConfirmationMailer, NotificationError
from .rooms import RoomProvisioner, RoomProvisioningError
from .security import TokenAuth, authenticate_basic_header, build_user_dependency

logger = logging.getLogger("auralynk.service")


class ConfirmationRequest(BaseModel):
    # Missing fields are rejected by the mailer, not by validation.
    email: str = ""
    time: str = ""


class ProfileView(BaseModel):
    id: int
    role: str
    display_name: str
    bio: str
    email: Optional[str] = None
    services: List[str]
    available_slots: List[str]


class ProfileUpdateRequest(BaseModel):
    display_name: str = Field(..., min_length=1, max_length=128)
    bio: str = Field(default="", max_length=4000)
    services: Optional[List[str]] = None

    @field_validator("display_name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("Display name must not be empty")
        return cleaned


class SlotsReplaceRequest(BaseModel):
    slots: List[str] = Field(default_factory=list)


class SlotRequest(BaseModel):
    slot: str = Field(..., min_length=1)


class ReaderView(BaseModel):
    id: int
    display_name: str
    bio: str
    services: List[str]
    available_slots: List[str]
    slots_by_day: Dict[str, List[str]]


class ReaderListResponse(BaseModel):
    readers: List[ReaderView]


class AvailabilityResponse(BaseModel):
    reader_id: int
    available_slots: List[str]
    slots_by_day: Dict[str, List[str]]


class BookingCreateRequest(BaseModel):
    reader_id: int = Field(..., ge=1)
    selected_time: str = Field(..., min_length=1)


class BookingResponse(BaseModel):
    id: int
    client_id: int
    reader_id: int
    selected_time: str
    status: str
    room_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    client_name: Optional[str] = None
    reader_name: Optional[str] = None


class AcceptResponse(BookingResponse):
    notification_sent: bool


class BookingListResponse(BaseModel):
    bookings: List[BookingResponse]
    pending_count: int


class RoomResponse(BaseModel):
    booking_id: int
    room_url: str


class SessionResponse(BaseModel):
    booking_id: int
    selected_time: str
    room_url: Optional[str] = None
    joinable: bool
    reason: str
    message: str


class NotificationView(BaseModel):
    id: int
    message: str
    timestamp: datetime


class NotificationListResponse(BaseModel):
    notifications: List[NotificationView]


def _profile_to_view(user: User) -> ProfileView:
    return ProfileView(
        id=user.id,
        role=user.role.value,
        display_name=user.display_name,
        bio=user.bio,
        email=user.email,
        services=list(user.services),
        available_slots=list(user.available_slots),
    )


def _booking_to_response(
    booking: Booking,
    *,
    client_name: Optional[str] = None,
    reader_name: Optional[str] = None,
) -> BookingResponse:
    return BookingResponse(
        id=booking.id,
        client_id=booking.client_id,
        reader_id=booking.reader_id,
        selected_time=booking.selected_time,
        status=booking.status.value,
        room_url=booking.room_url,
        created_at=booking.created_at,
        updated_at=booking.updated_at,
        client_name=client_name,
        reader_name=reader_name,
    )


def _view_to_response(view: BookingView) -> BookingResponse:
    return _booking_to_response(
        view.booking,
        client_name=view.client_name,
        reader_name=view.reader_name,
    )


def _http_error(exc: Exception) -> HTTPException:
    """Translate a domain exception into the matching HTTP error."""

    if isinstance(exc, BookingConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, PermissionError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, KeyError):
        detail = exc.args[0] if exc.args else "Not found"
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(detail))
    if isinstance(exc, RoomProvisioningError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal error")


def register_integration_routes(
    app: FastAPI,
    *,
    rooms: RoomProvisioner,
    mailer: ConfirmationMailer,
    tokens: tuple[str, ...] = (),
) -> None:
    """Expose the room and confirmation endpoints used by the booking frontend."""

    dependencies = [Depends(TokenAuth(tokens))] if tokens else []

    @app.post("/create-room", dependencies=dependencies)
    def create_room() -> JSONResponse:
        try:
            room = rooms.create_room()
        except RoomProvisioningError as exc:
            logger.warning("Room creation failed: %s", exc)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"error": "Room creation failed"},
            )
        return JSONResponse(content={"roomUrl": room.url})

    @app.post("/send-confirmation", dependencies=dependencies)
    def send_confirmation(request: ConfirmationRequest) -> JSONResponse:
        try:
            mailer.send_confirmation(request.email, request.time)
        except NotificationError as exc:
            logger.warning("Confirmation email to %s failed: %s", request.email, exc)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"error": "Email failed"},
            )
        return JSONResponse(content={"success": True})


def register_api_routes(
    app: FastAPI,
    service: BookingService,
    *,
    current_user: Callable[..., User],
) -> None:
    """Expose the JSON API endpoints on the provided FastAPI application."""

    @app.get("/healthz")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/v1/profile", response_model=ProfileView)
    def get_profile(user: User = Depends(current_user)) -> ProfileView:
        return _profile_to_view(user)

    @app.put("/v1/profile", response_model=ProfileView)
    def update_profile(
        request: ProfileUpdateRequest,
        user: User = Depends(current_user),
    ) -> ProfileView:
        try:
            updated = service.update_profile(
                user,
                display_name=request.display_name,
                bio=request.bio,
                services=request.services,
            )
        except (ValueError, PermissionError, KeyError) as exc:
            raise _http_error(exc) from exc
        return _profile_to_view(updated)

    @app.put("/v1/profile/slots", response_model=ProfileView)
    def replace_slots(
        request: SlotsReplaceRequest,
        user: User = Depends(current_user),
    ) -> ProfileView:
        try:
            updated = service.set_slots(user, request.slots)
        except (ValueError, PermissionError, KeyError) as exc:
            raise _http_error(exc) from exc
        logger.info("Reader %s declared %s slots", user.id, len(updated.available_slots))
        return _profile_to_view(updated)

    @app.post("/v1/profile/slots", response_model=ProfileView)
    def add_slot(request: SlotRequest, user: User = Depends(current_user)) -> ProfileView:
        try:
            updated = service.add_slot(user, request.slot)
        except (ValueError, PermissionError, KeyError) as exc:
            raise _http_error(exc) from exc
        return _profile_to_view(updated)

    @app.delete("/v1/profile/slots", response_model=ProfileView)
    def remove_slot(
        slot: str = Query(..., min_length=1),
        user: User = Depends(current_user),
    ) -> ProfileView:
        try:
            updated = service.remove_slot(user, slot)
        except (ValueError, PermissionError, KeyError) as exc:
            raise _http_error(exc) from exc
        return _profile_to_view(updated)

    @app.get("/v1/readers", response_model=ReaderListResponse)
    def list_readers(user: User = Depends(current_user)) -> ReaderListResponse:
        listings = service.list_readers()
        return ReaderListResponse(
            readers=[
                ReaderView(
                    id=listing.reader.id,
                    display_name=listing.reader.display_name,
                    bio=listing.reader.bio,
                    services=list(listing.reader.services),
                    available_slots=list(listing.available_slots),
                    slots_by_day=group_slots_by_day(listing.available_slots),
                )
                for listing in listings
            ]
        )

    @app.get("/v1/readers/{reader_id}/availability", response_model=AvailabilityResponse)
    def reader_availability(
        reader_id: int,
        user: User = Depends(current_user),
    ) -> AvailabilityResponse:
        try:
            slots = service.reader_availability(reader_id)
        except KeyError as exc:
            raise _http_error(exc) from exc
        return AvailabilityResponse(
            reader_id=reader_id,
            available_slots=slots,
            slots_by_day=group_slots_by_day(slots),
        )

    @app.post(
        "/v1/bookings",
        status_code=status.HTTP_201_CREATED,
        response_model=BookingResponse,
    )
    def request_booking(
        request: BookingCreateRequest,
        user: User = Depends(current_user),
    ) -> BookingResponse:
        try:
            booking = service.request_booking(user, request.reader_id, request.selected_time)
        except (ValueError, PermissionError, KeyError) as exc:
            raise _http_error(exc) from exc
        return _booking_to_response(booking, client_name=user.display_name)

    @app.get("/v1/bookings", response_model=BookingListResponse)
    def list_bookings(
        booking_status: Optional[BookingStatus] = Query(default=None, alias="status"),
        upcoming: bool = False,
        user: User = Depends(current_user),
    ) -> BookingListResponse:
        views = service.list_bookings(user, status=booking_status, upcoming_only=upcoming)
        return BookingListResponse(
            bookings=[_view_to_response(view) for view in views],
            pending_count=service.pending_count(user),
        )

    @app.post("/v1/bookings/{booking_id}/accept", response_model=AcceptResponse)
    def accept_booking(booking_id: int, user: User = Depends(current_user)) -> AcceptResponse:
        try:
            result = service.accept(user, booking_id)
        except (ValueError, PermissionError, KeyError) as exc:
            raise _http_error(exc) from exc
        response = _booking_to_response(result.booking, reader_name=user.display_name)
        return AcceptResponse(**response.model_dump(), notification_sent=result.notification_sent)

    @app.post("/v1/bookings/{booking_id}/reject", response_model=BookingResponse)
    def reject_booking(booking_id: int, user: User = Depends(current_user)) -> BookingResponse:
        try:
            booking = service.reject(user, booking_id)
        except (ValueError, PermissionError, KeyError) as exc:
            raise _http_error(exc) from exc
        return _booking_to_response(booking, reader_name=user.display_name)

    @app.delete("/v1/bookings/{booking_id}", response_model=BookingResponse)
    def cancel_booking(booking_id: int, user: User = Depends(current_user)) -> BookingResponse:
        try:
            booking = service.cancel(user, booking_id)
        except (ValueError, PermissionError, KeyError) as exc:
            raise _http_error(exc) from exc
        return _booking_to_response(booking)

    @app.post("/v1/bookings/{booking_id}/room", response_model=RoomResponse)
    def booking_room(booking_id: int, user: User = Depends(current_user)) -> RoomResponse:
        try:
            booking = service.ensure_room(user, booking_id)
        except RoomProvisioningError as exc:
            logger.warning("Could not provision a room for booking %s: %s", booking_id, exc)
            raise _http_error(exc) from exc
        except (ValueError, PermissionError, KeyError) as exc:
            raise _http_error(exc) from exc
        return RoomResponse(booking_id=booking.id, room_url=booking.room_url or "")

    @app.get("/v1/bookings/{booking_id}/session", response_model=SessionResponse)
    def booking_session(booking_id: int, user: User = Depends(current_user)) -> SessionResponse:
        try:
            booking, join = service.session_status(user, booking_id)
        except (PermissionError, KeyError) as exc:
            raise _http_error(exc) from exc
        return SessionResponse(
            booking_id=booking.id,
            selected_time=booking.selected_time,
            room_url=booking.room_url,
            joinable=join.joinable,
            reason=join.reason,
            message=join.message,
        )

    @app.get("/v1/notifications", response_model=NotificationListResponse)
    def list_notifications(user: User = Depends(current_user)) -> NotificationListResponse:
        return NotificationListResponse(
            notifications=[
                NotificationView(id=item.id, message=item.message, timestamp=item.timestamp)
                for item in service.notifications(user)
            ]
        )

    @app.websocket("/v1/bookings/stream")
    async def booking_stream(websocket: WebSocket) -> None:
        user = await anyio.to_thread.run_sync(
            authenticate_basic_header,
            service.database,
            websocket.headers.get("authorization"),
        )
        if user is None:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        await websocket.accept()
        loop = asyncio.get_running_loop()
        send_stream, receive_stream = anyio.create_memory_object_stream(math.inf)

        def enqueue(event: BookingEvent) -> None:
            with suppress(anyio.ClosedResourceError, anyio.BrokenResourceError):
                send_stream.send_nowait(event)

        def forward(event: BookingEvent) -> None:
            # Publishers run on worker threads; hand the event to the socket's loop.
            loop.call_soon_threadsafe(enqueue, event)

        if user.is_reader:
            subscription = service.feed.subscribe(forward, reader_id=user.id)
        else:
            subscription = service.feed.subscribe(forward, client_id=user.id)
        logger.info("User %s subscribed to booking events", user.id)

        try:
            pending = await anyio.to_thread.run_sync(service.pending_count, user)
            await websocket.send_json(
                {
                    "type": "snapshot",
                    "user_id": user.id,
                    "role": user.role.value,
                    "pending_count": pending,
                }
            )

            async with anyio.create_task_group() as task_group:

                async def pump_client() -> None:
                    try:
                        while True:
                            message = await websocket.receive()
                            if message["type"] == "websocket.disconnect":
                                break
                    except WebSocketDisconnect:
                        pass
                    finally:
                        task_group.cancel_scope.cancel()

                async def pump_events() -> None:
                    try:
                        async with receive_stream:
                            async for event in receive_stream:
                                await websocket.send_json(event.to_dict())
                    except WebSocketDisconnect:
                        pass
                    finally:
                        task_group.cancel_scope.cancel()

                task_group.start_soon(pump_client)
                task_group.start_soon(pump_events)
        finally:
            subscription.cancel()
            send_stream.close()
            logger.info("User %s unsubscribed from booking events", user.id)
            if websocket.client_state != WebSocketState.DISCONNECTED:
                with suppress(RuntimeError):
                    await websocket.close()


def create_app(
    *,
    database: Database | None = None,
    settings: Settings | None = None,
    rooms: RoomProvisioner | None = None,
    mailer: ConfirmationMailer | None = None,
    feed: BookingFeed | None = None,
    cache: AvailabilityCache | None = None,
) -> FastAPI:
    """Instantiate the FastAPI application for the booking service."""

    app_settings = settings or load_settings()
    db = database or Database(resolve_database_path(app_settings.database_path))
    db.initialize()

    room_provisioner = rooms or RoomProvisioner(
        app_settings.daily_api_key,
        base_url=app_settings.daily_api_url,
    )
    if not room_provisioner.configured:
        logger.warning("No video API key configured; room creation will fail until one is set.")
    confirmation_mailer = mailer or ConfirmationMailer(app_settings.mail)
    availability_cache = cache or AvailabilityCache(
        ttl=timedelta(seconds=app_settings.availability_cache_ttl)
    )

    booking_service = BookingService(
        db,
        feed=feed or BookingFeed(),
        cache=availability_cache,
        mailer=confirmation_mailer,
        rooms=room_provisioner,
        pending_blocks_slot=app_settings.pending_blocks_slot,
    )

    app = FastAPI(
        title="Auralynk Booking API",
        version="0.1.0",
        description="Marketplace API for booking live sessions with readers.",
    )
    origins = list(app_settings.cors_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.database = db
    app.state.settings = app_settings
    app.state.bookings = booking_service

    register_integration_routes(
        app,
        rooms=room_provisioner,
        mailer=confirmation_mailer,
        tokens=app_settings.integration_tokens,
    )
    register_api_routes(app, booking_service, current_user=build_user_dependency(db))

    return app


__all__ = ["create_app", "register_api_routes", "register_integration_routes"]
