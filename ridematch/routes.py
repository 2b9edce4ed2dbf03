from fastapi import APIRouter, Depends, Header
from typing import Optional, List
import logging

from . import (db, schemas, directory, matching, pricing, journeys, bidding, rides,
               settlement, vouchers, gateway)
from .auth import Caller, get_caller
from .errors import AuthorizationError

logger = logging.getLogger(__name__)

router = APIRouter()


async def get_conn():
    async with db.get_conn() as conn:
        yield conn


def get_payment_gateway():
    return gateway.get_gateway()


def _require_self_or_operator(caller: Caller, driver_id: int):
    if caller.user_id != driver_id and not caller.is_operator:
        raise AuthorizationError("Drivers can only manage their own directory entry")


# ---------------------------------------------------------------- journeys

@router.post("/journeys", response_model=schemas.JourneyOut)
async def create_journey(req: schemas.JourneyCreate, idempotency_key: Optional[str] = Header(None),
                         caller: Caller = Depends(get_caller), conn=Depends(get_conn)):
    key = f"journey:{caller.user_id}:{idempotency_key}" if idempotency_key else None
    if key:
        stored = await journeys.find_idempotent_response(conn, key)
        if stored:
            logger.info("create_journey: replaying idempotency_key=%s", idempotency_key)
            return stored

    journey = await journeys.create_journey(
        conn, caller,
        origin=(req.origin.lat, req.origin.lon),
        destination=(req.destination.lat, req.destination.lon),
        pickup_address=req.pickup_address,
        dropoff_address=req.dropoff_address,
        preferred_vehicle_type=req.preferred_vehicle_type,
        is_restricted=req.is_restricted,
        is_shareable=req.is_shareable,
        seats=req.seats,
        scheduled_at=req.scheduled_at,
    )
    output = schemas.JourneyOut.from_row(journey).model_dump(mode="json")
    if key:
        output = await journeys.store_idempotent_response(conn, key, output)
    return output


@router.get("/journeys/{journey_id}", response_model=schemas.JourneyOut)
async def get_journey(journey_id: int, caller: Caller = Depends(get_caller), conn=Depends(get_conn)):
    return schemas.JourneyOut.from_row(await journeys.get_journey(conn, journey_id))


@router.post("/journeys/{journey_id}/cancel", response_model=schemas.JourneyOut)
async def cancel_journey(journey_id: int, caller: Caller = Depends(get_caller), conn=Depends(get_conn)):
    return schemas.JourneyOut.from_row(await journeys.cancel_journey(conn, caller, journey_id))


@router.get("/journeys/{journey_id}/matches", response_model=List[schemas.MatchOut])
async def journey_matches(journey_id: int, radius_km: Optional[float] = None,
                          caller: Caller = Depends(get_caller), conn=Depends(get_conn)):
    matches = await matching.match_journey(conn, journey_id, radius_km=radius_km)
    return [
        schemas.MatchOut(
            driver_id=m["driver"]["id"],
            name=m["driver"]["name"],
            vehicle_type=m["driver"]["vehicle_type"],
            rating=m["driver"]["rating"],
            distance_km=m["distance_km"],
            score=m["score"],
            breakdown=m["breakdown"],
        )
        for m in matches
    ]


@router.get("/journeys/{journey_id}/suggested-bid", response_model=schemas.SuggestedBid)
async def suggested_bid(journey_id: int, caller: Caller = Depends(get_caller), conn=Depends(get_conn)):
    journey = await journeys.get_journey(conn, journey_id)
    return pricing.suggest_bid(journey)


# ---------------------------------------------------------------- bids

@router.post("/journeys/{journey_id}/bids", response_model=schemas.BidOut)
async def submit_bid(journey_id: int, req: schemas.BidCreate, caller: Caller = Depends(get_caller),
                     conn=Depends(get_conn)):
    return await bidding.submit_bid(conn, caller, journey_id, req.amount, message=req.message,
                                    expires_at=req.expires_at, ttl_sec=req.ttl_sec)


@router.get("/journeys/{journey_id}/bids", response_model=List[schemas.BidOut])
async def journey_bids(journey_id: int, caller: Caller = Depends(get_caller), conn=Depends(get_conn)):
    return await bidding.list_bids_for_journey(conn, caller, journey_id)


@router.get("/bids/mine", response_model=List[schemas.BidOut])
async def my_bids(caller: Caller = Depends(get_caller), conn=Depends(get_conn)):
    return await bidding.list_bids_for_driver(conn, caller)


@router.post("/bids/{bid_id}/accept", response_model=schemas.BidAccepted)
async def accept_bid(bid_id: int, caller: Caller = Depends(get_caller), conn=Depends(get_conn)):
    logger.info("accept_bid: bid=%s passenger=%s", bid_id, caller.user_id)
    result = await bidding.accept_bid(conn, caller, bid_id)
    return {
        "bid": result["bid"],
        "journey_id": result["journey"]["id"],
        "ride_id": result["ride"]["id"],
        "merged": result["merged"],
    }


# ---------------------------------------------------------------- rides

@router.get("/rides/{ride_id}", response_model=schemas.RideOut)
async def get_ride(ride_id: int, caller: Caller = Depends(get_caller), conn=Depends(get_conn)):
    return await rides.get_ride(conn, caller, ride_id)


@router.post("/rides/{ride_id}/accept", response_model=schemas.RideOut)
async def confirm_ride(ride_id: int, caller: Caller = Depends(get_caller), conn=Depends(get_conn)):
    return await rides.confirm_ride(conn, caller, ride_id)


@router.post("/rides/{ride_id}/arrive", response_model=schemas.RideOut)
async def mark_arrived(ride_id: int, caller: Caller = Depends(get_caller), conn=Depends(get_conn)):
    return await rides.mark_arrived(conn, caller, ride_id)


@router.post("/rides/{ride_id}/start", response_model=schemas.RideOut)
async def start_ride(ride_id: int, caller: Caller = Depends(get_caller), conn=Depends(get_conn)):
    return await rides.start_ride(conn, caller, ride_id)


@router.post("/rides/{ride_id}/end", response_model=schemas.RideOut)
async def end_ride(ride_id: int, req: schemas.EndRideRequest, caller: Caller = Depends(get_caller),
                   conn=Depends(get_conn)):
    logger.info("end_ride: ride=%s final_fare=%s distance_meters=%s", ride_id, req.final_fare, req.distance_meters)
    return await rides.end_ride(conn, caller, ride_id, final_fare=req.final_fare,
                                distance_meters=req.distance_meters)


@router.post("/rides/{ride_id}/cancel", response_model=schemas.RideOut)
async def cancel_ride(ride_id: int, req: schemas.CancelRequest, caller: Caller = Depends(get_caller),
                      conn=Depends(get_conn)):
    return await rides.cancel_ride(conn, caller, ride_id, reason=req.reason)


@router.post("/rides/{ride_id}/no-show", response_model=schemas.RideOut)
async def report_no_show(ride_id: int, caller: Caller = Depends(get_caller), conn=Depends(get_conn)):
    return await rides.report_no_show(conn, caller, ride_id)


@router.post("/rides/{ride_id}/legs/{passenger_id}", response_model=schemas.RideOut)
async def update_leg(ride_id: int, passenger_id: int, req: schemas.LegStatusUpdate,
                     caller: Caller = Depends(get_caller), conn=Depends(get_conn)):
    return await rides.update_passenger_leg_status(conn, caller, ride_id, passenger_id, req.status)


# ---------------------------------------------------------------- settlement

@router.post("/rides/{ride_id}/settle", response_model=List[schemas.PaymentOut])
async def settle_ride(ride_id: int, req: schemas.SettleRequest, caller: Caller = Depends(get_caller),
                      conn=Depends(get_conn), payment_gateway=Depends(get_payment_gateway)):
    result = await settlement.settle_fare(conn, caller, ride_id, gateway=payment_gateway,
                                          voucher_code=req.voucher_code)
    return result["payments"]


@router.post("/rides/{ride_id}/tip", response_model=schemas.PaymentOut)
async def tip_ride(ride_id: int, req: schemas.TipRequest, caller: Caller = Depends(get_caller),
                   conn=Depends(get_conn), payment_gateway=Depends(get_payment_gateway)):
    return await settlement.settle_tip(conn, caller, ride_id, req.amount, gateway=payment_gateway)


@router.get("/rides/{ride_id}/payments", response_model=List[schemas.PaymentOut])
async def ride_payments(ride_id: int, caller: Caller = Depends(get_caller), conn=Depends(get_conn)):
    return await settlement.list_payments(conn, caller, ride_id)


@router.post("/payments/{payment_id}/refund", response_model=schemas.PaymentOut)
async def refund_payment(payment_id: int, caller: Caller = Depends(get_caller), conn=Depends(get_conn)):
    return await settlement.refund_payment(conn, caller, payment_id)


# ---------------------------------------------------------------- vouchers

@router.post("/vouchers", response_model=schemas.VoucherOut)
async def create_voucher(req: schemas.VoucherCreate, caller: Caller = Depends(get_caller), conn=Depends(get_conn)):
    return await vouchers.create_voucher(conn, caller, **req.model_dump())


@router.post("/vouchers/{voucher_id}/grants", response_model=schemas.UserVoucherOut)
async def grant_voucher(voucher_id: int, req: schemas.VoucherGrant, caller: Caller = Depends(get_caller),
                        conn=Depends(get_conn)):
    return await vouchers.grant_voucher(conn, caller, voucher_id, req.user_id)


@router.get("/vouchers/mine", response_model=List[schemas.UserVoucherOut])
async def my_vouchers(caller: Caller = Depends(get_caller), conn=Depends(get_conn)):
    return await vouchers.list_user_vouchers(conn, caller)


@router.post("/vouchers/validate", response_model=schemas.VoucherQuote)
async def validate_voucher(req: schemas.VoucherValidate, caller: Caller = Depends(get_caller),
                           conn=Depends(get_conn)):
    quote = await vouchers.validate_voucher(conn, caller.user_id, req.code, req.amount)
    return {"code": quote["voucher"]["code"], "discount_amount": quote["discount_amount"],
            "final_amount": quote["final_amount"]}


# ---------------------------------------------------------------- driver directory

@router.post("/drivers")
async def register_driver(req: schemas.DriverRegister, caller: Caller = Depends(get_caller), conn=Depends(get_conn)):
    _require_self_or_operator(caller, req.id)
    if not caller.is_operator and not caller.can_drive:
        raise AuthorizationError("Only drivers can register in the directory")
    return await directory.register_driver(
        conn, req.id, name=req.name, vehicle_type=req.vehicle_type, rating=req.rating, gender=req.gender,
        accepts_restricted_rides=req.accepts_restricted_rides, available=req.available,
    )


@router.post("/drivers/{driver_id}/location")
async def driver_location(driver_id: int, loc: schemas.Location, caller: Caller = Depends(get_caller)):
    _require_self_or_operator(caller, driver_id)
    await directory.update_driver_location(driver_id, loc.lat, loc.lon)
    return {"status": "ok"}


@router.post("/drivers/{driver_id}/availability")
async def driver_availability(driver_id: int, req: schemas.AvailabilityUpdate,
                              caller: Caller = Depends(get_caller), conn=Depends(get_conn)):
    _require_self_or_operator(caller, driver_id)
    return await directory.set_driver_availability(conn, driver_id, req.available)
