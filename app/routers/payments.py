import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from app.core import config
from app.routers.webhook import get_session_factory, get_whatsapp_service
from app.services.paystack import verify_webhook_signature
from app.services.webhook_processing import process_payment_event
from app.whatsapp.service import WhatsAppService

router = APIRouter(tags=["payments"])
logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-paystack-signature"


@router.post("/webhooks/paystack")
async def paystack_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    session_factory=Depends(get_session_factory),
    whatsapp: WhatsAppService = Depends(get_whatsapp_service),
):
    # the signature covers the exact bytes received, not a re-serialization
    raw_body = await request.body()

    if config.PAYSTACK_VERIFY_SIGNATURE and config.PAYSTACK_SECRET_KEY:
        signature = request.headers.get(SIGNATURE_HEADER)
        if not verify_webhook_signature(raw_body, signature, config.PAYSTACK_SECRET_KEY):
            logger.warning("Invalid Paystack signature", extra={"integration": "paystack"})
            raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError:
        logger.warning("Unparseable Paystack webhook body (%s bytes)", len(raw_body))
        return {"status": "ignored"}

    if not isinstance(payload, dict):
        return {"status": "ignored"}

    logger.info("Paystack event received: %s", payload.get("event"), extra={"integration": "paystack"})
    background_tasks.add_task(
        process_payment_event,
        payload,
        session_factory=session_factory,
        whatsapp=whatsapp,
    )
    return {"status": "received"}
