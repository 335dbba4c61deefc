import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from app.core.config import META_WA_VERIFY_TOKEN
from app.core.database import SessionLocal, get_db
from app.models.whatsapp_config import WhatsAppConfig
from app.services.webhook_processing import process_whatsapp_payload
from app.whatsapp.service import WhatsAppService

router = APIRouter(tags=["webhooks"])
logger = logging.getLogger(__name__)


def get_session_factory():
    return SessionLocal


def get_whatsapp_service() -> WhatsAppService:
    return WhatsAppService()


def _verify_token_matches(db: Session, token: str | None) -> bool:
    if not token:
        return False
    if META_WA_VERIFY_TOKEN and token == META_WA_VERIFY_TOKEN:
        return True
    config = db.query(WhatsAppConfig).filter(WhatsAppConfig.verify_token == token).first()
    return config is not None


@router.get("/webhook/whatsapp")
async def verify_whatsapp_webhook(request: Request, db: Session = Depends(get_db)):
    qp = request.query_params
    mode = qp.get("hub.mode")
    token = qp.get("hub.verify_token")
    challenge = qp.get("hub.challenge")

    if mode == "subscribe" and _verify_token_matches(db, token):
        logger.info("WhatsApp webhook verified")
        return PlainTextResponse(challenge or "")

    logger.warning("WhatsApp webhook verification failed mode=%s", mode)
    raise HTTPException(status_code=403, detail="Invalid verify token")


@router.post("/webhook/whatsapp")
async def whatsapp_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    session_factory=Depends(get_session_factory),
    whatsapp: WhatsAppService = Depends(get_whatsapp_service),
):
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError:
        # Meta retries non-2xx deliveries; a malformed body will not get better
        logger.warning("Unparseable WhatsApp webhook body (%s bytes)", len(raw_body))
        return {"status": "ignored"}

    if not isinstance(payload, dict):
        return {"status": "ignored"}

    background_tasks.add_task(
        process_whatsapp_payload,
        payload,
        session_factory=session_factory,
        whatsapp=whatsapp,
    )
    return {"status": "received"}
