import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from banksync.config import get_settings
from banksync.database import Base, engine
from banksync.app import models  # noqa: F401  registers tables on Base
from banksync.app.routes import banking, categorization

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)

Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Banksync API",
    description="Open-banking connection sync and transaction categorization",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(banking.router, prefix="/api")
app.include_router(categorization.router, prefix="/api")


@app.get("/api/health")
def health_check():
    return {"status": "healthy"}
