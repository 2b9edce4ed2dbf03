"""Promotional vouchers: definitions, per-user grants and guarded redemption."""
from datetime import datetime
from typing import Optional, List
from sqlalchemy import select, insert, update, and_, func
from sqlalchemy.exc import IntegrityError
import logging

from . import models
from .auth import Caller, ROLE_ADMIN
from .errors import AuthorizationError, NotFoundError, StateConflictError, ValidationError

logger = logging.getLogger(__name__)

DISCOUNT_TYPES = (models.DISCOUNT_PERCENTAGE, models.DISCOUNT_FIXED_AMOUNT)


def _require_admin(caller: Caller, what: str):
    if caller.role != ROLE_ADMIN:
        raise AuthorizationError(f"Only administrators can {what}")


def calculate_discount(voucher: dict, amount: float) -> float:
    """Discount for ``amount``: a capped percentage or a flat value, never more than the amount."""
    if voucher["discount_type"] == models.DISCOUNT_PERCENTAGE:
        discount = amount * voucher["discount_value"] / 100
        if voucher.get("max_discount_amount") is not None:
            discount = min(discount, voucher["max_discount_amount"])
    else:
        discount = voucher["discount_value"]
    return round(max(0.0, min(discount, amount)), 2)


async def load_voucher_by_code(conn, code: str, for_update: bool = False) -> dict:
    sel = select(models.vouchers).where(models.vouchers.c.code == code.strip().upper())
    if for_update:
        sel = sel.with_for_update()
    row = (await conn.execute(sel)).first()
    if not row:
        raise NotFoundError(f"Voucher {code!r} not found")
    return dict(row._mapping)


async def create_voucher(conn, caller: Caller, code: str, discount_type: str, discount_value: float,
                         expires_at: datetime, description: str = None,
                         max_discount_amount: Optional[float] = None, min_ride_amount: float = 0.0,
                         usage_limit_per_user: int = 1, total_usage_limit: Optional[int] = None) -> dict:
    _require_admin(caller, "create vouchers")
    code = (code or "").strip().upper()
    if not code:
        raise ValidationError("Voucher code is required")
    if discount_type not in DISCOUNT_TYPES:
        raise ValidationError(f"discount_type must be one of {', '.join(DISCOUNT_TYPES)}")
    if discount_value is None or discount_value <= 0:
        raise ValidationError("discount_value must be positive")
    if discount_type == models.DISCOUNT_PERCENTAGE:
        if discount_value > 100:
            raise ValidationError("A percentage discount cannot exceed 100")
        if max_discount_amount is None:
            raise ValidationError("Percentage vouchers need a max_discount_amount")
    if max_discount_amount is not None and max_discount_amount <= 0:
        raise ValidationError("max_discount_amount must be positive")
    if usage_limit_per_user < 1 or (total_usage_limit is not None and total_usage_limit < 1):
        raise ValidationError("Usage limits must be at least 1")
    expires_at = models.as_utc(expires_at)
    if expires_at is None or expires_at <= models.utcnow():
        raise ValidationError("Voucher expiry must be in the future")

    try:
        async with conn.begin():
            existing = (await conn.execute(
                select(models.vouchers.c.id).where(models.vouchers.c.code == code)
            )).first()
            if existing:
                raise StateConflictError(f"Voucher code {code} already exists")
            res = await conn.execute(
                insert(models.vouchers).returning(models.vouchers.c.id).values(
                    code=code,
                    description=description,
                    discount_type=discount_type,
                    discount_value=discount_value,
                    max_discount_amount=max_discount_amount,
                    min_ride_amount=min_ride_amount or 0.0,
                    expires_at=expires_at,
                    usage_limit_per_user=usage_limit_per_user,
                    total_usage_limit=total_usage_limit,
                    is_active=True,
                )
            )
            voucher_id = res.scalar_one()
            row = (await conn.execute(select(models.vouchers).where(models.vouchers.c.id == voucher_id))).first()
    except IntegrityError:
        raise StateConflictError(f"Voucher code {code} already exists") from None
    logger.info("create_voucher: voucher=%s code=%s type=%s value=%s", voucher_id, code, discount_type, discount_value)
    return dict(row._mapping)


async def grant_voucher(conn, caller: Caller, voucher_id: int, user_id: int) -> dict:
    _require_admin(caller, "grant vouchers")
    now = models.utcnow()
    async with conn.begin():
        row = (await conn.execute(select(models.vouchers).where(models.vouchers.c.id == voucher_id))).first()
        if not row:
            raise NotFoundError(f"Voucher {voucher_id} not found")
        voucher = row._mapping
        if not voucher["is_active"] or models.as_utc(voucher["expires_at"]) <= now:
            raise StateConflictError(f"Voucher {voucher['code']} is no longer active")
        res = await conn.execute(
            insert(models.user_vouchers).returning(models.user_vouchers.c.id).values(
                user_id=user_id,
                voucher_id=voucher_id,
                status=models.VOUCHER_ACTIVE,
                assigned_at=now,
            )
        )
        grant_id = res.scalar_one()
        grant = (await conn.execute(
            select(models.user_vouchers).where(models.user_vouchers.c.id == grant_id)
        )).first()
    logger.info("grant_voucher: voucher=%s user=%s grant=%s", voucher_id, user_id, grant_id)
    return dict(grant._mapping)


async def list_user_vouchers(conn, caller: Caller) -> List[dict]:
    now = models.utcnow()
    sel = (
        select(models.user_vouchers, models.vouchers.c.code, models.vouchers.c.description,
               models.vouchers.c.discount_type, models.vouchers.c.discount_value,
               models.vouchers.c.max_discount_amount, models.vouchers.c.min_ride_amount,
               models.vouchers.c.expires_at)
        .select_from(models.user_vouchers.join(models.vouchers,
                                               models.user_vouchers.c.voucher_id == models.vouchers.c.id))
        .where(models.user_vouchers.c.user_id == caller.user_id)
        .order_by(models.user_vouchers.c.assigned_at.desc(), models.user_vouchers.c.id.desc())
    )
    async with conn.begin():
        rows = (await conn.execute(sel)).all()
    grants = []
    for row in rows:
        grant = dict(row._mapping)
        if grant["status"] in models.VOUCHER_REDEEMABLE and models.as_utc(grant["expires_at"]) <= now:
            grant["status"] = models.VOUCHER_EXPIRED
        grants.append(grant)
    return grants


async def _consumed_count(conn, voucher_id: int, user_id: int = None) -> int:
    conditions = [models.user_vouchers.c.voucher_id == voucher_id,
                  models.user_vouchers.c.status.in_(models.VOUCHER_CONSUMED)]
    if user_id is not None:
        conditions.append(models.user_vouchers.c.user_id == user_id)
    sel = select(func.count()).select_from(models.user_vouchers).where(and_(*conditions))
    return (await conn.execute(sel)).scalar_one()


async def check_voucher(conn, user_id: int, code: str, amount: float, for_update: bool = False) -> dict:
    """Validate ``code`` for ``user_id`` on ``amount`` without touching state.

    Runs inside the caller's transaction. Returns the voucher, the user's
    unredeemed grant and the discount it yields. With ``for_update`` the voucher
    row stays locked until the transaction ends, so usage limits hold against
    concurrent redemptions.
    """
    if not code or not code.strip():
        raise ValidationError("Voucher code is required")
    if amount is None or amount < 0:
        raise ValidationError("Amount must not be negative")
    voucher = await load_voucher_by_code(conn, code, for_update=for_update)
    if not voucher["is_active"]:
        raise ValidationError(f"Voucher {voucher['code']} is not active")
    if models.as_utc(voucher["expires_at"]) <= models.utcnow():
        raise ValidationError(f"Voucher {voucher['code']} has expired")
    if amount < (voucher["min_ride_amount"] or 0.0):
        raise ValidationError(f"Voucher {voucher['code']} needs a ride of at least {voucher['min_ride_amount']}")
    if await _consumed_count(conn, voucher["id"], user_id) >= voucher["usage_limit_per_user"]:
        raise ValidationError(f"You have already used voucher {voucher['code']}")
    if voucher["total_usage_limit"] is not None and \
            await _consumed_count(conn, voucher["id"]) >= voucher["total_usage_limit"]:
        raise ValidationError(f"Voucher {voucher['code']} has reached its usage limit")

    grant = (await conn.execute(
        select(models.user_vouchers)
        .where(and_(models.user_vouchers.c.user_id == user_id,
                    models.user_vouchers.c.voucher_id == voucher["id"],
                    models.user_vouchers.c.status.in_(models.VOUCHER_REDEEMABLE)))
        .order_by(models.user_vouchers.c.id)
    )).first()
    if not grant:
        raise ValidationError(f"Voucher {voucher['code']} is not available to you")

    discount = calculate_discount(voucher, amount)
    return {
        "voucher": voucher,
        "user_voucher": dict(grant._mapping),
        "discount_amount": discount,
        "final_amount": round(amount - discount, 2),
    }


async def validate_voucher(conn, user_id: int, code: str, amount: float) -> dict:
    async with conn.begin():
        result = await check_voucher(conn, user_id, code, amount)
    logger.info("validate_voucher: user=%s code=%s amount=%s discount=%s",
                user_id, result["voucher"]["code"], amount, result["discount_amount"])
    return result


async def redeem_voucher(conn, user_voucher_id: int, ride_id: int) -> dict:
    """Mark a grant redeemed against ``ride_id``. Runs inside the caller's transaction.

    The update only matches grants that are still available or active, so a
    second redemption touches no row and raises StateConflictError.
    """
    now = models.utcnow()
    res = await conn.execute(
        update(models.user_vouchers)
        .where(and_(models.user_vouchers.c.id == user_voucher_id,
                    models.user_vouchers.c.status.in_(models.VOUCHER_REDEEMABLE)))
        .values(status=models.VOUCHER_REDEEMED, redeemed_at=now, ride_id=ride_id)
    )
    if res.rowcount != 1:
        raise StateConflictError(f"Voucher grant {user_voucher_id} has already been redeemed")
    logger.info("redeem_voucher: grant=%s ride=%s", user_voucher_id, ride_id)
    return {"user_voucher_id": user_voucher_id, "ride_id": ride_id, "status": models.VOUCHER_REDEEMED,
            "redeemed_at": now}
