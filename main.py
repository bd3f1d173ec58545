from contextlib import asynccontextmanager
import json
import logging

from pydantic import ValidationError as PydanticValidationError
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

import config
import drivers
import matching
import negotiation
import payments
import rides
from db import init_db
from errors import EngineError, ValidationError
from schemas import (
    AcceptRide, CancelRide, CompleteRide, CreateRide, DriverLocation, DriverOnline,
    GeoQuery, ProposeNegotiation, RateRide, RefundPayment, RespondNegotiation,
    RideFilters, StartRide, UpdatePayment, parse_ride_action,
)

logger = logging.getLogger(__name__)


def dump(obj):
    return obj.model_dump(mode="json") if obj is not None else None


def ok(data, message=None, status_code=200, meta=None):
    body = {"success": True, "data": data}
    if message:
        body["message"] = message
    if meta is not None:
        body["meta"] = meta
    return JSONResponse(body, status_code=status_code)


async def read_json(request: Request) -> dict:
    raw = await request.body()
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except ValueError:
        raise ValidationError("request body must be valid JSON")
    if not isinstance(payload, dict):
        raise ValidationError("request body must be a JSON object")
    return payload


async def parse(request: Request, schema):
    return schema.model_validate(await read_json(request))


# ────────────────────────── rides ───────────────────────────────────────────

async def create_ride(request: Request):
    req = await parse(request, CreateRide)
    created = await run_in_threadpool(rides.create_ride, **req.model_dump())
    data = dump(created.ride)
    data["promo_discount"] = str(created.promo_discount)
    data["estimated_final_price"] = str(created.estimated_final_price)
    return ok(data, "Ride created successfully", status_code=201)


async def list_rides(request: Request):
    filters = RideFilters.model_validate(dict(request.query_params))
    page = await run_in_threadpool(rides.list_rides, **filters.model_dump())
    return ok(
        [dump(r) for r in page.rides],
        meta={"total": page.total, "limit": page.limit, "offset": page.offset, "has_more": page.has_more},
    )


async def get_ride(request: Request):
    ride_id = request.path_params["ride_id"]
    actor = request.query_params.get("user_id")
    if actor is not None and not actor.isdigit():
        raise ValidationError("user_id must be an integer")
    detail = await run_in_threadpool(rides.get_ride, ride_id, int(actor) if actor else None)
    data = dump(detail.ride)
    data["negotiations"] = [dump(n) for n in detail.negotiations]
    data["payment"] = dump(detail.payment)
    data["promo_code"] = dump(detail.promo_code)
    data["rating"] = dump(detail.rating)
    return ok(data)


async def ride_tracking(request: Request):
    ride_id = request.path_params["ride_id"]
    user_id = request.query_params.get("user_id", "")
    if not user_id.isdigit():
        raise ValidationError("user_id is required")
    tracking = await run_in_threadpool(rides.get_ride_tracking, ride_id, int(user_id))
    data = dump(tracking.ride)
    data["driver"] = dump(tracking.driver)
    data["vehicle"] = dump(tracking.vehicle)
    data["driver_location"] = tracking.driver_location
    return ok(data)


async def accept_ride(request: Request):
    req = await parse(request, AcceptRide)
    ride = await run_in_threadpool(rides.accept_ride, request.path_params["ride_id"], req.driver_id, req.vehicle_id)
    return ok(dump(ride), "Ride accepted successfully")


async def start_ride(request: Request):
    req = await parse(request, StartRide)
    ride = await run_in_threadpool(rides.start_ride, request.path_params["ride_id"], req.driver_id)
    return ok(dump(ride), "Ride started successfully")


async def complete_ride(request: Request):
    req = await parse(request, CompleteRide)
    done = await run_in_threadpool(rides.complete_ride, request.path_params["ride_id"], **req.model_dump())
    data = dump(done.ride)
    data["payment"] = dump(done.payment)
    return ok(data, "Ride completed successfully")


async def cancel_ride(request: Request):
    req = await parse(request, CancelRide)
    ride = await run_in_threadpool(rides.cancel_ride, request.path_params["ride_id"], **req.model_dump())
    return ok(dump(ride), "Ride cancelled successfully")


def _propose(ride_id: int, action: ProposeNegotiation):
    n = negotiation.propose_negotiation(ride_id, action.user_id, action.proposed_price)
    return dump(n), "Price negotiation submitted successfully", 201


def _respond(ride_id: int, action: RespondNegotiation):
    n = negotiation.respond_negotiation(ride_id, action.negotiation_id, action.driver_id, action.accept)
    return dump(n), f"Negotiation {'accepted' if action.accept else 'rejected'} successfully", 200


def _update_payment(ride_id: int, action: UpdatePayment):
    p = payments.update_payment_status(ride_id, action.payment_status, action.transaction_id, action.payment_method)
    return dump(p), "Payment status updated successfully", 200


def _rate(ride_id: int, action: RateRide):
    r = rides.rate_ride(ride_id, action.user_id, action.rating, action.comment, action.is_user_to_driver)
    return dump(r), "Rating submitted successfully", 201


RIDE_ACTIONS = {
    ProposeNegotiation: _propose,
    RespondNegotiation: _respond,
    UpdatePayment: _update_payment,
    RateRide: _rate,
}


async def ride_action(request: Request):
    payload = await read_json(request)
    if "action" not in payload and "action" in request.query_params:
        payload["action"] = request.query_params["action"]
    action = parse_ride_action(payload)
    handler = RIDE_ACTIONS[type(action)]
    data, message, status_code = await run_in_threadpool(handler, request.path_params["ride_id"], action)
    return ok(data, message, status_code=status_code)


async def available_rides(request: Request):
    q = GeoQuery.model_validate(dict(request.query_params))
    matches = await run_in_threadpool(matching.available_rides, q.latitude, q.longitude, q.radius, q.limit)
    data = []
    for m in matches:
        item = dump(m.ride)
        item["distance_from_driver"] = m.distance_km
        item["current_negotiation"] = dump(m.negotiation)
        data.append(item)
    radius = config.AVAILABLE_RIDE_RADIUS_KM if q.radius is None else q.radius
    return ok(data, meta={
        "total": len(data),
        "search_radius": radius,
        "driver_location": {"latitude": q.latitude, "longitude": q.longitude},
    })


# ────────────────────────── drivers ─────────────────────────────────────────

async def nearby_drivers(request: Request):
    q = GeoQuery.model_validate(dict(request.query_params))
    matches = await run_in_threadpool(matching.nearby_drivers, q.latitude, q.longitude, q.radius, q.limit)
    data = []
    for m in matches:
        item = dump(m.driver)
        item["name"] = m.user.name
        item["distance"] = m.distance_km
        item["vehicles"] = [dump(v) for v in m.vehicles]
        data.append(item)
    radius = config.NEARBY_DRIVER_RADIUS_KM if q.radius is None else q.radius
    return ok(data, meta={
        "total": len(data),
        "search_radius": radius,
        "search_location": {"latitude": q.latitude, "longitude": q.longitude},
    })


async def driver_location(request: Request):
    req = await parse(request, DriverLocation)
    driver = await run_in_threadpool(
        drivers.update_driver_location, request.path_params["driver_id"], req.latitude, req.longitude,
    )
    return ok(dump(driver), "Location updated successfully")


async def driver_online(request: Request):
    req = await parse(request, DriverOnline)
    driver = await run_in_threadpool(drivers.set_driver_online, request.path_params["driver_id"], req.is_online)
    return ok(dump(driver), f"Driver is now {'online' if req.is_online else 'offline'}")


# ────────────────────────── payments ────────────────────────────────────────

async def refund_payment(request: Request):
    req = await parse(request, RefundPayment)
    payment = await run_in_threadpool(payments.refund_payment, request.path_params["payment_id"], req.reason)
    return ok(dump(payment), "Payment refunded successfully")


# ────────────────────────── errors ──────────────────────────────────────────

async def engine_error(request: Request, exc: EngineError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


async def invalid_payload(request: Request, exc: PydanticValidationError):
    problems = [
        {"loc": [str(part) for part in err["loc"]], "msg": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse({"error": "validation", "detail": "invalid request", "problems": problems}, status_code=400)


@asynccontextmanager
async def lifespan(app):
    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    init_db()
    yield


routes = [
    Route("/rides", create_ride, methods=["POST"]),
    Route("/rides", list_rides, methods=["GET"]),
    Route("/rides/available", available_rides, methods=["GET"]),
    Route("/rides/{ride_id:int}", get_ride, methods=["GET"]),
    Route("/rides/{ride_id:int}", ride_action, methods=["PATCH"]),
    Route("/rides/{ride_id:int}/tracking", ride_tracking, methods=["GET"]),
    Route("/rides/{ride_id:int}/accept", accept_ride, methods=["POST"]),
    Route("/rides/{ride_id:int}/start", start_ride, methods=["POST"]),
    Route("/rides/{ride_id:int}/complete", complete_ride, methods=["POST"]),
    Route("/rides/{ride_id:int}/cancel", cancel_ride, methods=["POST"]),
    Route("/drivers/nearby", nearby_drivers, methods=["GET"]),
    Route("/drivers/{driver_id:int}/location", driver_location, methods=["PUT"]),
    Route("/drivers/{driver_id:int}/online", driver_online, methods=["PUT"]),
    Route("/payments/{payment_id:int}/refund", refund_payment, methods=["POST"]),
]

app = Starlette(
    debug=False,
    routes=routes,
    lifespan=lifespan,
    exception_handlers={
        EngineError: engine_error,
        PydanticValidationError: invalid_payload,
    },
)
