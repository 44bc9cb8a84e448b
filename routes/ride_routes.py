from fastapi import APIRouter, HTTPException, Request
from typing import List
from models import (
    AssignDriverRequest, ChatMessage, CreateRideRequest, MessageRequest, RatingRequest, Ride,
)
from services.exceptions import (
    ActiveRideExists, AlreadyClaimed, AlreadyRated, InvalidInput, InvalidTransition,
    PermissionDenied, RideNotFound,
)
from services.route_service import get_route_or_estimate
from services.ride_service import (
    assign_driver_details, cancel_ride, claim_ride, create_ride, get_ride, list_driver_rides,
    list_open_rides, list_ride_history, mark_finished, start_ride, submit_rating,
)
from services.chat_service import list_messages, send_message

router = APIRouter()

def _store(request: Request):
    store = request.app.state.store
    if not store:
        raise HTTPException(status_code=500, detail="Firestore not initialized")
    return store

def _user_id(request: Request) -> str:
    user_id = request.headers.get("X-User-ID")
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing user ID")
    return user_id

def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, InvalidInput):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, PermissionDenied):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, RideNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, AlreadyClaimed):
        return HTTPException(status_code=409, detail="Offer no longer available")
    if isinstance(exc, InvalidTransition):
        return HTTPException(
            status_code=409,
            detail={"message": str(exc), "currentStatus": getattr(exc.current_status, "value", exc.current_status)},
        )
    if isinstance(exc, ActiveRideExists):
        return HTTPException(status_code=409, detail={"message": str(exc), "rideId": exc.ride_id})
    return HTTPException(status_code=500, detail=f"Error processing ride: {exc}")

@router.post("/", response_model=Ride)
async def create_ride_endpoint(body: CreateRideRequest, request: Request):
    store = _store(request)
    user_id = _user_id(request)

    try:
        route = await get_route_or_estimate(body.origin, body.destination, request.app.state.http_client)
        return await create_ride(
            user_id, body.origin, body.destination, store,
            route=route, passenger_name=body.passengerName, passenger_phone=body.passengerPhone,
        )
    except Exception as exc:
        raise _http_error(exc)

@router.get("/open", response_model=List[Ride])
async def get_open_rides(request: Request):
    store = _store(request)
    _user_id(request)
    try:
        return await list_open_rides(store)
    except Exception as exc:
        raise _http_error(exc)

@router.get("/history", response_model=List[Ride])
async def get_history(request: Request):
    store = _store(request)
    user_id = _user_id(request)
    try:
        return await list_ride_history(user_id, store)
    except Exception as exc:
        raise _http_error(exc)

@router.get("/driver", response_model=List[Ride])
async def get_driver_rides(request: Request):
    store = _store(request)
    user_id = _user_id(request)
    try:
        return await list_driver_rides(user_id, store)
    except Exception as exc:
        raise _http_error(exc)

@router.get("/{ride_id}", response_model=Ride)
async def get_ride_endpoint(ride_id: str, request: Request):
    store = _store(request)
    _user_id(request)
    try:
        ride = await get_ride(ride_id, store)
    except Exception as exc:
        raise _http_error(exc)
    if not ride:
        raise HTTPException(status_code=404, detail=f"Ride {ride_id} not found")
    return ride

@router.post("/{ride_id}/claim", response_model=Ride)
async def claim_ride_endpoint(ride_id: str, request: Request):
    store = _store(request)
    user_id = _user_id(request)
    try:
        return await claim_ride(ride_id, user_id, store)
    except Exception as exc:
        raise _http_error(exc)

@router.post("/{ride_id}/assign", response_model=Ride)
async def assign_ride_endpoint(ride_id: str, body: AssignDriverRequest, request: Request):
    store = _store(request)
    user_id = _user_id(request)
    try:
        return await assign_driver_details(
            ride_id, user_id, body.driverName, body.driverPlate, store,
            driver_location=body.driverLocation, driver_id=body.driverId,
        )
    except Exception as exc:
        raise _http_error(exc)

@router.post("/{ride_id}/start", response_model=Ride)
async def start_ride_endpoint(ride_id: str, request: Request):
    store = _store(request)
    user_id = _user_id(request)
    try:
        return await start_ride(ride_id, user_id, store)
    except Exception as exc:
        raise _http_error(exc)

@router.post("/{ride_id}/finish", response_model=Ride)
async def finish_ride_endpoint(ride_id: str, request: Request):
    store = _store(request)
    user_id = _user_id(request)
    try:
        return await mark_finished(ride_id, user_id, store)
    except Exception as exc:
        raise _http_error(exc)

@router.post("/{ride_id}/cancel", response_model=Ride)
async def cancel_ride_endpoint(ride_id: str, request: Request):
    store = _store(request)
    user_id = _user_id(request)
    try:
        return await cancel_ride(ride_id, user_id, store)
    except Exception as exc:
        raise _http_error(exc)

@router.post("/{ride_id}/rating", response_model=Ride)
async def rate_ride_endpoint(ride_id: str, body: RatingRequest, request: Request):
    store = _store(request)
    user_id = _user_id(request)
    try:
        try:
            return await submit_rating(ride_id, user_id, store, score=body.score, label=body.label)
        except AlreadyRated:
            # A duplicate rating is a no-op for the passenger
            return await get_ride(ride_id, store)
    except Exception as exc:
        raise _http_error(exc)

@router.get("/{ride_id}/messages", response_model=List[ChatMessage])
async def get_messages(ride_id: str, request: Request):
    store = _store(request)
    _user_id(request)
    try:
        return await list_messages(ride_id, store)
    except Exception as exc:
        raise _http_error(exc)

@router.post("/{ride_id}/messages", response_model=ChatMessage | None)
async def post_message(ride_id: str, body: MessageRequest, request: Request):
    store = _store(request)
    user_id = _user_id(request)
    try:
        return await send_message(ride_id, user_id, body.text, store)
    except Exception as exc:
        raise _http_error(exc)
