"""Settlement Engine: fares, tips and refunds for completed rides.

Payment rows are insert-only. A correction is a new row pointing at the one it
adjusts through ``adjusts_payment_id``.
"""
from dataclasses import dataclass
from typing import List, Tuple
from sqlalchemy import select, insert, update, and_, func
from sqlalchemy.exc import IntegrityError
import logging

from .config import settings
from . import events, models, vouchers
from .auth import Caller, ROLE_SYSTEM
from .errors import AuthorizationError, NotFoundError, StateConflictError, UpstreamError, ValidationError
from .gateway import get_gateway
from .rides import load_ride, load_legs

logger = logging.getLogger(__name__)


@dataclass
class Split:
    commission: float
    driver_earnings: float


def compute_split(amount: float, completed_rides: int) -> Split:
    """Platform commission and driver share of a gross fare.

    Drivers with at least COMMISSION_WAIVER_RIDE_COUNT completed rides keep the
    whole fare.
    """
    if completed_rides >= settings.COMMISSION_WAIVER_RIDE_COUNT:
        return Split(commission=0.0, driver_earnings=round(amount, 2))
    commission = round(amount * settings.COMMISSION_RATE, 2)
    return Split(commission=commission, driver_earnings=round(amount - commission, 2))


async def completed_ride_count(conn, driver_id: int) -> int:
    sel = select(func.count()).select_from(models.rides).where(
        and_(models.rides.c.driver_id == driver_id, models.rides.c.status == models.RIDE_COMPLETED))
    return (await conn.execute(sel)).scalar_one()


def _fare_charges(ride: dict, legs: List[dict]) -> List[Tuple[int, float]]:
    """(payer_id, gross amount) for each passenger who rode on a completed ride."""
    if ride["ride_type"] == models.RIDE_SHARED:
        return [(l["passenger_id"], l["fare_contribution"]) for l in legs if l["status"] == models.LEG_DROPPED_OFF]
    return [(ride["passenger_id"], ride["final_fare"])]


def _require_settleable(ride: dict):
    if ride["status"] != models.RIDE_COMPLETED:
        raise StateConflictError(f"Ride {ride['id']} is {ride['status']}; only completed rides can be settled")
    if ride["paid"]:
        raise StateConflictError(f"Ride {ride['id']} has already been settled")


async def _insert_payment(conn, **values) -> dict:
    values.setdefault("currency", settings.CURRENCY)
    res = await conn.execute(insert(models.payments).returning(models.payments.c.id).values(**values))
    row = (await conn.execute(select(models.payments).where(models.payments.c.id == res.scalar_one()))).first()
    return dict(row._mapping)


async def _charge(gateway, payer_id: int, amount: float, description: str, key: str):
    if amount <= 0:
        return None
    result = await gateway.charge(payer_id, amount, settings.CURRENCY, description, idempotency_key=key)
    if not result.success:
        raise UpstreamError(f"Payment failed for passenger {payer_id}: {result.message}")
    return result.reference


async def settle_fare(conn, caller: Caller, ride_id: int, gateway=None, voucher_code: str = None) -> dict:
    """Charge every passenger of a completed ride and record the fare payments.

    The voucher is checked in a read before the unit, then re-checked with its
    row locked and redeemed inside it, so a declined charge leaves the grant
    unused.
    """
    if caller.role != ROLE_SYSTEM:
        raise AuthorizationError("Only the system can settle ride fares")
    gateway = gateway or get_gateway()

    quote = None
    if voucher_code:
        async with conn.begin():
            ride = await load_ride(conn, ride_id)
            _require_settleable(ride)
            legs = await load_legs(conn, ride_id)
        primary_amount = dict(_fare_charges(ride, legs)).get(ride["passenger_id"])
        if primary_amount is None:
            raise ValidationError(f"Passenger {ride['passenger_id']} has no fare on ride {ride_id} to discount")
        quote = await vouchers.validate_voucher(conn, ride["passenger_id"], voucher_code, primary_amount)

    payments = []
    async with conn.begin():
        ride = await load_ride(conn, ride_id, for_update=True)
        _require_settleable(ride)
        legs = await load_legs(conn, ride_id)
        completed = await completed_ride_count(conn, ride["driver_id"])

        for payer_id, amount in _fare_charges(ride, legs):
            discount = 0.0
            if quote and payer_id == ride["passenger_id"]:
                # limits may have been used up since the read above
                quote = await vouchers.check_voucher(conn, payer_id, voucher_code, amount, for_update=True)
                await vouchers.redeem_voucher(conn, quote["user_voucher"]["id"], ride_id)
                discount = vouchers.calculate_discount(quote["voucher"], amount)
            split = compute_split(amount, completed)
            charged = round(amount - discount, 2)
            reference = await _charge(gateway, payer_id, charged, f"Fare for ride {ride_id}",
                                      f"ride-{ride_id}-fare-{payer_id}")
            payments.append(await _insert_payment(
                conn,
                ride_id=ride_id,
                payer_id=payer_id,
                payee_id=ride["driver_id"],
                payment_type=models.PAYMENT_FARE,
                amount=amount,
                discount_amount=discount,
                charged_amount=charged,
                commission=split.commission,
                driver_earnings=split.driver_earnings,
                status=models.PAY_COMPLETED,
                provider=gateway.name,
                provider_reference=reference,
            ))

        res = await conn.execute(
            update(models.rides)
            .where(and_(models.rides.c.id == ride_id, models.rides.c.paid.is_(False)))
            .values(paid=True)
        )
        if res.rowcount != 1:
            raise StateConflictError(f"Ride {ride_id} has already been settled")
        ride["paid"] = True

    logger.info("settle_fare: ride=%s payments=%s completed_rides=%s voucher=%s",
                ride_id, [p["id"] for p in payments], completed, voucher_code)
    for p in payments:
        await events.publish(events.PAYMENT_PROCESSED, {
            "payment_id": p["id"], "ride_id": ride_id, "status": p["status"], "payer_id": p["payer_id"],
            "amount": p["amount"], "charged_amount": p["charged_amount"], "commission": p["commission"],
        })
    if quote:
        await events.publish(events.VOUCHER_REDEEMED, {
            "user_voucher_id": quote["user_voucher"]["id"], "status": models.VOUCHER_REDEEMED,
            "code": quote["voucher"]["code"], "user_id": ride["passenger_id"], "ride_id": ride_id,
        })
    return {"ride": ride, "payments": payments}


async def settle_tip(conn, caller: Caller, ride_id: int, amount: float, gateway=None) -> dict:
    if amount is None or amount < settings.MIN_TIP_AMOUNT:
        raise ValidationError(f"Tip must be at least {settings.MIN_TIP_AMOUNT}")
    gateway = gateway or get_gateway()
    async with conn.begin():
        ride = await load_ride(conn, ride_id, for_update=True)
        legs = await load_legs(conn, ride_id)
        if caller.user_id != ride["passenger_id"] and not any(l["passenger_id"] == caller.user_id for l in legs):
            raise AuthorizationError("Only a passenger of this ride can tip")
        if ride["status"] != models.RIDE_COMPLETED or not ride["paid"]:
            raise StateConflictError("Tips are only accepted on completed, paid rides")
        existing = (await conn.execute(
            select(models.payments.c.id).where(and_(models.payments.c.ride_id == ride_id,
                                                    models.payments.c.payment_type == models.PAYMENT_TIP))
        )).first()
        if existing:
            raise StateConflictError(f"Ride {ride_id} has already been tipped")

        amount = round(amount, 2)
        res = await conn.execute(
            update(models.rides)
            .where(and_(models.rides.c.id == ride_id, models.rides.c.tip_amount == 0))
            .values(tip_amount=amount)
        )
        if res.rowcount != 1:
            raise StateConflictError(f"Ride {ride_id} has already been tipped")
        reference = await _charge(gateway, caller.user_id, amount, f"Tip for ride {ride_id}", f"ride-{ride_id}-tip")
        payment = await _insert_payment(
            conn,
            ride_id=ride_id,
            payer_id=caller.user_id,
            payee_id=ride["driver_id"],
            payment_type=models.PAYMENT_TIP,
            amount=amount,
            discount_amount=0.0,
            charged_amount=amount,
            commission=0.0,
            driver_earnings=amount,
            status=models.PAY_COMPLETED,
            provider=gateway.name,
            provider_reference=reference,
        )
    logger.info("settle_tip: ride=%s payment=%s passenger=%s amount=%s", ride_id, payment["id"], caller.user_id, amount)
    await events.publish(events.PAYMENT_TIP_PROCESSED, {
        "payment_id": payment["id"], "ride_id": ride_id, "status": payment["status"],
        "driver_id": ride["driver_id"], "amount": amount,
    })
    return payment


async def refund_payment(conn, caller: Caller, payment_id: int) -> dict:
    """Reverse a completed payment with a negated adjustment row."""
    if not caller.is_operator:
        raise AuthorizationError("Only administrators can issue refunds")
    try:
        async with conn.begin():
            row = (await conn.execute(
                select(models.payments).where(models.payments.c.id == payment_id).with_for_update()
            )).first()
            if not row:
                raise NotFoundError(f"Payment {payment_id} not found")
            original = row._mapping
            if original["status"] != models.PAY_COMPLETED or original["adjusts_payment_id"] is not None:
                raise StateConflictError(f"Payment {payment_id} cannot be refunded")
            existing = (await conn.execute(
                select(models.payments.c.id).where(models.payments.c.adjusts_payment_id == payment_id)
            )).first()
            if existing:
                raise StateConflictError(f"Payment {payment_id} has already been refunded")
            refund = await _insert_payment(
                conn,
                ride_id=original["ride_id"],
                payer_id=original["payer_id"],
                payee_id=original["payee_id"],
                payment_type=models.PAYMENT_REFUND,
                amount=-original["amount"],
                discount_amount=-(original["discount_amount"] or 0.0),
                charged_amount=-original["charged_amount"],
                commission=-(original["commission"] or 0.0),
                driver_earnings=-original["driver_earnings"],
                currency=original["currency"],
                status=models.PAY_REFUNDED,
                provider=original["provider"],
                adjusts_payment_id=payment_id,
            )
    except IntegrityError:
        raise StateConflictError(f"Payment {payment_id} has already been refunded") from None
    logger.info("refund_payment: payment=%s refund=%s amount=%s by=%s",
                payment_id, refund["id"], refund["amount"], caller.user_id)
    await events.publish(events.PAYMENT_REFUNDED, {
        "payment_id": refund["id"], "adjusts_payment_id": payment_id, "status": refund["status"],
        "ride_id": refund["ride_id"], "amount": refund["amount"],
    })
    return refund


async def list_payments(conn, caller: Caller, ride_id: int) -> List[dict]:
    async with conn.begin():
        ride = await load_ride(conn, ride_id)
        legs = await load_legs(conn, ride_id)
        participants = {ride["driver_id"], ride["passenger_id"]} | {l["passenger_id"] for l in legs}
        if not caller.is_operator and caller.user_id not in participants:
            raise AuthorizationError("You are not a participant of this ride")
        rows = (await conn.execute(
            select(models.payments).where(models.payments.c.ride_id == ride_id).order_by(models.payments.c.id)
        )).all()
    return [dict(r._mapping) for r in rows]
