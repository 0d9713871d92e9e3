"""
main.py
=======
FastAPI application entry point.

Endpoints:
  POST   /promotions                   - Create a promotion
  GET    /promotions                   - List all promotions
  GET    /promotions/{id}              - Get promotion by ID
  PUT    /promotions/{id}              - Update promotion
  POST   /promotions/{id}/activate     - Activate a promotion (validation-gated)
  POST   /promotions/{id}/deactivate   - Soft-deactivate a promotion
  GET    /promotions/{id}/validation   - List rule violations of a promotion
  POST   /promotions/applicable        - Evaluate every candidate promotion against a cart
  POST   /promotions/optimal           - Best combination of promotions for a cart
  POST   /promotions/suggestions       - Draft promotion suggestions (best-effort)
  POST   /checkout/apply               - Apply the best combination to a confirmed order
"""

import logging
from typing import List

from fastapi import FastAPI, HTTPException, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import models
import schemas
import promotion_engine
import repository
from config import settings
from database import engine, get_db
from money import MoneyError

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Create DB tables on startup
models.Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Promotions Engine API",
    description="Rule-based promotions for an online store: eligibility conditions, discount actions and best-value selection.",
    version="1.0.0",
)


@app.exception_handler(MoneyError)
async def money_error_handler(request: Request, exc: MoneyError):
    logger.error("Currency error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": str(exc)})


# ═══════════════════════════════════════════════════
#  HELPERS
# ═══════════════════════════════════════════════════

def _get_row(db: Session, promotion_id: str) -> models.Promotion:
    row = db.query(models.Promotion).filter(models.Promotion.id == promotion_id).first()
    if not row:
        raise HTTPException(status_code=404, detail=f"Promotion with id={promotion_id} not found")
    return row


def _to_domain(db: Session, row: models.Promotion) -> schemas.Promotion:
    """Domain promotion for ``row``; 422 when its stored rules no longer parse."""
    try:
        return repository.to_domain(db, row)
    except ValidationError as exc:
        logger.warning("Promotion %s has malformed rules: %s", row.id, exc)
        raise HTTPException(
            status_code=422,
            detail=f"Promotion {row.id} has malformed stored rules ({exc.error_count()} errors)",
        )


def _as_response(promotion: schemas.Promotion) -> schemas.PromotionResponse:
    return schemas.PromotionResponse(
        **promotion.model_dump(),
        current_status=promotion.status(),
        uses_left=promotion.remaining_uses(),
    )


def _response(db: Session, row: models.Promotion) -> schemas.PromotionResponse:
    return _as_response(_to_domain(db, row))


def _ensure_valid(db: Session, row: models.Promotion) -> None:
    """Refuse to leave ``row`` active while it has rule violations."""
    try:
        promotion = _to_domain(db, row)
    except HTTPException:
        db.rollback()
        raise
    errors = promotion_engine.validate_promotion(promotion)
    if errors:
        db.rollback()
        raise HTTPException(status_code=422, detail=errors)


def _summary(result: schemas.PromotionResult) -> schemas.PromotionResultSummary:
    return schemas.PromotionResultSummary(
        promotion_id=result.promotion.id,
        name=result.promotion.name,
        code=result.promotion.code,
        stackable=result.promotion.stackable,
        discount=result.discount,
        description=result.description,
        applied=result.applied,
        reason=result.reason,
    )


def _optimal_response(selection: schemas.OptimalPromotionSet) -> schemas.OptimalPromotionsResponse:
    return schemas.OptimalPromotionsResponse(
        promotions=[_summary(r) for r in selection.promotions],
        total_discount=selection.total_discount,
        final_price=selection.final_price,
        savings=selection.savings,
        savings_percentage=selection.savings_percentage,
    )


def _dump_rules(items) -> list:
    return [item.model_dump(mode="json") for item in items]


# ═══════════════════════════════════════════════════
#  PROMOTION ADMINISTRATION
# ═══════════════════════════════════════════════════

@app.post(
    "/promotions",
    response_model=schemas.PromotionResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Promotions"],
    summary="Create a new promotion",
)
def create_promotion(payload: schemas.PromotionCreate, db: Session = Depends(get_db)):
    """
    Create a promotion. Drafts (``is_active=false``) are stored as-is; an
    active promotion must pass validation first.
    """
    row = models.Promotion(
        name=payload.name,
        description=payload.description,
        code=payload.code,
        kind=payload.kind.value,
        conditions=_dump_rules(payload.conditions),
        actions=_dump_rules(payload.actions),
        priority=payload.priority,
        start_at=payload.start_at,
        end_at=payload.end_at,
        max_uses=payload.max_uses,
        max_uses_per_user=payload.max_uses_per_user,
        stackable=payload.stackable,
        is_active=payload.is_active,
        extra=payload.metadata,
    )
    db.add(row)
    db.flush()
    if row.is_active:
        _ensure_valid(db, row)
    db.commit()
    db.refresh(row)
    logger.info("Created promotion %s (%s)", row.id, row.name)
    return _response(db, row)


@app.get(
    "/promotions",
    response_model=List[schemas.PromotionResponse],
    tags=["Promotions"],
    summary="Get all promotions",
)
def get_all_promotions(db: Session = Depends(get_db)):
    """
    Retrieve all promotions (both active and inactive). Rows whose stored
    rules no longer parse are logged and left out.
    """
    promotions = []
    for row in db.query(models.Promotion).all():
        try:
            promotion = repository.to_domain(db, row)
        except ValidationError as exc:
            logger.warning("Skipping promotion %s with malformed rules: %s", row.id, exc)
            continue
        promotions.append(_as_response(promotion))
    return promotions


@app.get(
    "/promotions/{promotion_id}",
    response_model=schemas.PromotionResponse,
    tags=["Promotions"],
    summary="Get a promotion by ID",
)
def get_promotion(promotion_id: str, db: Session = Depends(get_db)):
    return _response(db, _get_row(db, promotion_id))


@app.put(
    "/promotions/{promotion_id}",
    response_model=schemas.PromotionResponse,
    tags=["Promotions"],
    summary="Update a promotion",
)
def update_promotion(promotion_id: str, update_data: schemas.PromotionUpdate, db: Session = Depends(get_db)):
    """
    Update a promotion. All fields are optional; only provided fields are
    updated. Usage counters cannot be edited here.
    """
    row = _get_row(db, promotion_id)
    changes = update_data.model_dump(exclude_unset=True, exclude_none=True)

    if "kind" in changes:
        changes["kind"] = update_data.kind.value
    if "conditions" in changes:
        changes["conditions"] = _dump_rules(update_data.conditions)
    if "actions" in changes:
        changes["actions"] = _dump_rules(update_data.actions)
    if "metadata" in changes:
        changes["extra"] = changes.pop("metadata")

    for field, value in changes.items():
        setattr(row, field, value)

    if row.is_active:
        _ensure_valid(db, row)
    db.commit()
    db.refresh(row)
    return _response(db, row)


@app.post(
    "/promotions/{promotion_id}/activate",
    response_model=schemas.PromotionResponse,
    tags=["Promotions"],
    summary="Activate a promotion",
)
def activate_promotion(promotion_id: str, db: Session = Depends(get_db)):
    """Activate a draft promotion. Responds 422 with the rule violations if it is not valid."""
    row = _get_row(db, promotion_id)
    row.is_active = True
    _ensure_valid(db, row)
    db.commit()
    db.refresh(row)
    logger.info("Activated promotion %s", row.id)
    return _response(db, row)


@app.post(
    "/promotions/{promotion_id}/deactivate",
    response_model=schemas.PromotionResponse,
    tags=["Promotions"],
    summary="Deactivate a promotion",
)
def deactivate_promotion(promotion_id: str, db: Session = Depends(get_db)):
    """
    Promotions are never deleted, since past orders reference them; they are
    deactivated instead.
    """
    row = _get_row(db, promotion_id)
    row.is_active = False
    db.commit()
    db.refresh(row)
    logger.info("Deactivated promotion %s", row.id)
    return _response(db, row)


@app.get(
    "/promotions/{promotion_id}/validation",
    response_model=schemas.PromotionValidationResponse,
    tags=["Promotions"],
    summary="Validate a promotion",
)
def validate_promotion(promotion_id: str, db: Session = Depends(get_db)):
    row = _get_row(db, promotion_id)
    errors = promotion_engine.validate_promotion(_to_domain(db, row))
    return schemas.PromotionValidationResponse(promotion_id=row.id, valid=not errors, errors=errors)


# ═══════════════════════════════════════════════════
#  EVALUATION
# ═══════════════════════════════════════════════════

@app.post(
    "/promotions/applicable",
    response_model=schemas.ApplicablePromotionsResponse,
    tags=["Evaluate Promotions"],
    summary="Evaluate all candidate promotions for a cart",
)
def get_applicable_promotions(request: schemas.EvaluationRequest, db: Session = Depends(get_db)):
    """
    Given a cart (and optionally the user and entered coupon codes), returns
    one result per candidate promotion: the discount it would give, or the
    reason it does not apply.
    """
    user_id = request.user.id if request.user else None
    promotions = repository.load_candidate_promotions(db, request.promotion_codes, user_id)
    results = promotion_engine.find_applicable_promotions(request.cart, request.user, promotions)
    return schemas.ApplicablePromotionsResponse(results=[_summary(r) for r in results])


@app.post(
    "/promotions/optimal",
    response_model=schemas.OptimalPromotionsResponse,
    tags=["Evaluate Promotions"],
    summary="Find the best combination of promotions for a cart",
)
def get_optimal_promotions(request: schemas.EvaluationRequest, db: Session = Depends(get_db)):
    user_id = request.user.id if request.user else None
    promotions = repository.load_candidate_promotions(db, request.promotion_codes, user_id)
    selection = promotion_engine.find_optimal_promotions(request.cart, request.user, promotions)
    return _optimal_response(selection)


@app.post(
    "/promotions/suggestions",
    response_model=schemas.SuggestionsResponse,
    tags=["Evaluate Promotions"],
    summary="Suggest draft promotions from sales data",
)
def suggest_promotions(request: schemas.SuggestionRequest):
    """Drafts are inactive and must be created and activated through the usual workflow."""
    suggestions = promotion_engine.generate_promotion_suggestions(request.sales_data, request.seasonal_data)
    return schemas.SuggestionsResponse(suggestions=suggestions)


# ═══════════════════════════════════════════════════
#  CHECKOUT
# ═══════════════════════════════════════════════════

@app.post(
    "/checkout/apply",
    response_model=schemas.CheckoutResponse,
    tags=["Checkout"],
    summary="Apply the best promotions to a confirmed order",
)
def apply_promotions(request: schemas.CheckoutRequest, db: Session = Depends(get_db)):
    """
    Select the best promotions for the order's cart, apply their discount and
    record their usage. Only for confirmed orders: usage is consumed.
    Responds 409 when a usage limit was reached by a concurrent checkout.
    """
    user_id = request.user.id if request.user else None
    promotions = repository.load_candidate_promotions(db, request.promotion_codes, user_id)
    selection = promotion_engine.find_optimal_promotions(request.cart, request.user, promotions)
    cart = promotion_engine.apply_promotions_to_cart(request.cart, selection, user_id)

    if user_id:
        try:
            for result in selection.promotions:
                if not repository.record_usage(db, result.promotion.id, user_id, result.discount):
                    db.rollback()
                    raise HTTPException(
                        status_code=409,
                        detail=f"Promotion {result.promotion.id} is no longer available",
                    )
            db.commit()
        except IntegrityError:
            db.rollback()
            raise HTTPException(status_code=409, detail="Promotion usage changed concurrently, please retry")

    logger.info(
        "Order %s: applied %s, total discount %s",
        request.order_id, cart.applied_promotion_ids, selection.total_discount,
    )
    return schemas.CheckoutResponse(
        order_id=request.order_id,
        cart=cart,
        selection=_optimal_response(selection),
    )


# ═══════════════════════════════════════════════════
#  HEALTH CHECK
# ═══════════════════════════════════════════════════

@app.get("/", tags=["Health"], summary="Health check")
def root():
    return {"status": "ok", "message": "Promotions Engine API is running"}
