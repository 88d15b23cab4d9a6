"""Public-facing routes (APP_ROLE=public)."""

from fastapi import APIRouter

from lexbill.api.routes import billing, payments, webhooks_pagarme, webhooks_stripe

router = APIRouter()


@router.get("/health")
def health() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}


router.include_router(billing.router)
router.include_router(payments.router)
router.include_router(webhooks_pagarme.router)
router.include_router(webhooks_stripe.router)
