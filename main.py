"""
main.py
=======
FastAPI application entry point.

Endpoints:
  POST   /coupons                  - Create a coupon
  GET    /coupons                  - List all coupons
  GET    /coupons/{code}           - Get coupon by code
  PUT    /coupons/{code}           - Update coupon
  DELETE /coupons/{code}           - Deactivate coupon
  POST   /coupons/{code}/validate  - Check a coupon for a user and cart, without using it
  POST   /coupons/{code}/redeem    - Use a coupon on a confirmed order
  GET    /coupons/{code}/stats     - Usage statistics for reporting
  POST   /available-coupons        - Coupons a user can use for a cart
  POST   /auto-apply-coupons       - Auto-apply coupons a user can use for a cart
"""

import logging
from typing import List

from fastapi import FastAPI, HTTPException, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
import schemas
import coupon_engine
from config import settings
from database import engine, get_db
from exceptions import (
    CartValidationFailed,
    ConcurrentRedemptionConflict,
    CouponError,
    CouponNotFound,
    CouponNotValid,
    NotEligible,
    StoreUnavailable,
    UsageLimitExceeded,
    UserNotFound,
)
from redemption import RedemptionService
from store import CouponStore, OrderStore, UserStore

logging.basicConfig(level=settings.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

# Create DB tables on startup
models.Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Storefront Coupons API",
    description="Coupon eligibility, cart validation, discount calculation and redemption for the storefront.",
    version="1.0.0",
)


# ═══════════════════════════════════════════════════
#  ERROR HANDLING
# ═══════════════════════════════════════════════════

_STATUS_BY_ERROR = [
    (CouponNotFound, status.HTTP_404_NOT_FOUND),
    (UserNotFound, status.HTTP_404_NOT_FOUND),
    (CartValidationFailed, 422),
    (ConcurrentRedemptionConflict, status.HTTP_409_CONFLICT),
    (NotEligible, status.HTTP_403_FORBIDDEN),
    (UsageLimitExceeded, status.HTTP_400_BAD_REQUEST),
    (CouponNotValid, status.HTTP_400_BAD_REQUEST),
    (StoreUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
]


@app.exception_handler(CouponError)
async def coupon_error_handler(request: Request, exc: CouponError):
    status_code = next(
        (code for error, code in _STATUS_BY_ERROR if isinstance(exc, error)),
        status.HTTP_400_BAD_REQUEST,
    )
    content = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, CartValidationFailed):
        content["errors"] = exc.errors
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Storage error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Coupon store is unavailable", "code": StoreUnavailable.code},
    )


def get_service(db: Session = Depends(get_db)) -> RedemptionService:
    return RedemptionService(CouponStore(db), UserStore(db), OrderStore(db))


def _response(coupon: schemas.Coupon) -> schemas.CouponResponse:
    return schemas.CouponResponse(
        **coupon.model_dump(),
        is_currently_valid=coupon_engine.is_currently_valid(coupon),
        is_expired=coupon_engine.is_expired(coupon),
        remaining_uses=coupon_engine.remaining_uses(coupon),
    )


# ═══════════════════════════════════════════════════
#  COUPON CRUD
# ═══════════════════════════════════════════════════

@app.post(
    "/coupons",
    response_model=schemas.CouponResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Coupons"],
    summary="Create a new coupon",
)
def create_coupon(coupon: schemas.CouponCreate, db: Session = Depends(get_db)):
    """
    Create a new coupon. Supports four discount types:
    - **percentage**: Percentage off the applicable items, optionally capped.
    - **fixed_amount**: Fixed amount off the applicable items.
    - **free_shipping**: Waives the cart's shipping cost.
    - **buy_x_get_y**: Every X units bought earn Y free units, cheapest first.
    """
    store = CouponStore(db)
    if store.exists(coupon.code):
        raise HTTPException(status_code=409, detail=f"Coupon {coupon.code} already exists")
    return _response(store.add(coupon))


@app.get(
    "/coupons",
    response_model=List[schemas.CouponResponse],
    tags=["Coupons"],
    summary="Get all coupons",
)
def get_all_coupons(db: Session = Depends(get_db)):
    """Retrieve all coupons (both active and inactive)."""
    store = CouponStore(db)
    return [_response(c) for c in store.list_all()]


@app.get(
    "/coupons/{code}",
    response_model=schemas.CouponResponse,
    tags=["Coupons"],
    summary="Get a coupon by code",
)
def get_coupon(code: str, db: Session = Depends(get_db)):
    """Retrieve a specific coupon by its code (case-insensitive)."""
    store = CouponStore(db)
    return _response(store.require(code))


@app.put(
    "/coupons/{code}",
    response_model=schemas.CouponResponse,
    tags=["Coupons"],
    summary="Update a coupon",
)
def update_coupon(code: str, update_data: schemas.CouponUpdate, db: Session = Depends(get_db)):
    """
    Update a specific coupon. All fields are optional — only provided fields are updated.
    Usage counters and statistics cannot be changed here.
    """
    store = CouponStore(db)
    try:
        coupon = store.update(code, update_data)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _response(coupon)


@app.delete(
    "/coupons/{code}",
    response_model=schemas.CouponResponse,
    tags=["Coupons"],
    summary="Deactivate a coupon",
)
def deactivate_coupon(code: str, db: Session = Depends(get_db)):
    """Coupons are never removed; this sets is_active to false."""
    store = CouponStore(db)
    return _response(store.deactivate(code))


# ═══════════════════════════════════════════════════
#  VALIDATE & REDEEM
# ═══════════════════════════════════════════════════

@app.post(
    "/coupons/{code}/validate",
    response_model=schemas.DiscountPreview,
    tags=["Apply Coupons"],
    summary="Check a coupon against a user and cart",
)
def validate_coupon(
    code: str, request: schemas.CouponCheckRequest, service: RedemptionService = Depends(get_service)
):
    """
    Runs the eligibility rules, then every cart condition, and returns the
    discount the coupon would give. Nothing is recorded.
    """
    return service.preview(code, request.user_id, request.cart, request.payment_method)


@app.post(
    "/coupons/{code}/redeem",
    response_model=schemas.Redemption,
    tags=["Apply Coupons"],
    summary="Redeem a coupon on a confirmed order",
)
def redeem_coupon(
    code: str, request: schemas.CouponCheckRequest, service: RedemptionService = Depends(get_service)
):
    """
    Validates the coupon again and counts the redemption. Call once per
    confirmed order; each call counts one use. Returns 409 when the coupon's
    limit was reached after it was validated.
    """
    return service.redeem(code, request.user_id, request.cart, request.payment_method)


# ═══════════════════════════════════════════════════
#  AVAILABLE COUPONS
# ═══════════════════════════════════════════════════

@app.post(
    "/available-coupons",
    response_model=schemas.AvailableCouponsResponse,
    tags=["Apply Coupons"],
    summary="Fetch all coupons a user can use for a cart",
)
def get_available_coupons(
    request: schemas.CouponCheckRequest, service: RedemptionService = Depends(get_service)
):
    """
    Currently valid coupons the user is eligible for, highest priority first.
    `best` names the one giving the largest discount on this cart.
    """
    return service.available(request.user_id, request.cart)


@app.post(
    "/auto-apply-coupons",
    response_model=schemas.AutoApplyResponse,
    tags=["Apply Coupons"],
    summary="Fetch auto-apply coupons for a cart",
)
def get_auto_apply_coupons(
    request: schemas.CouponCheckRequest, service: RedemptionService = Depends(get_service)
):
    """Only stackable coupons are combined; the combined discount never exceeds total + shipping."""
    return service.auto_apply(request.user_id, request.cart)


# ═══════════════════════════════════════════════════
#  REPORTING
# ═══════════════════════════════════════════════════

@app.get(
    "/coupons/{code}/stats",
    response_model=schemas.CouponStatsResponse,
    tags=["Reporting"],
    summary="Usage statistics for a coupon",
)
def get_coupon_stats(code: str, db: Session = Depends(get_db)):
    coupon = CouponStore(db).require(code)
    return schemas.CouponStatsResponse(
        code=coupon.code,
        used_count=coupon.usage.used_count,
        remaining_uses=coupon_engine.remaining_uses(coupon),
        unique_users=len(coupon.usage.per_user_used),
        stats=coupon.stats,
    )


# ═══════════════════════════════════════════════════
#  HEALTH CHECK
# ═══════════════════════════════════════════════════

@app.get("/", tags=["Health"], summary="Health check")
def root():
    return {"status": "ok", "message": "Storefront Coupons API is running"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=False)
