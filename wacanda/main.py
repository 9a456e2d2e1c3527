import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from wacanda.config import settings
from wacanda.database import get_db
from wacanda.logging_config import setup_logging
from wacanda.models import Conversation, HandoffRequest, Message, ProviderInstance
from wacanda.routers import conversations, handoffs, instances, webhook

setup_logging(settings.log_level)

app = FastAPI(
    title="Wacanda API",
    description="WhatsApp conversation reconciliation and AI response pipeline",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(instances.router)
app.include_router(conversations.router)
app.include_router(handoffs.router)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    return {
        "status": "ok",
        "instances": db.query(ProviderInstance).count(),
        "conversations": db.query(Conversation).count(),
        "messages": db.query(Message).count(),
        "handoff_requests": db.query(HandoffRequest).count(),
    }
