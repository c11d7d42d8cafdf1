from fastapi import FastAPI
from app.api.v1 import api_router
from app.config import settings
import logging
import os

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)

app = FastAPI(
    title=settings.app_name,
    description="Reverse tutoring: students teach a confused AI peer while teachers track comprehension",
    version="1.0.0",
    debug=settings.debug
)

app.include_router(api_router, prefix="/api/v1")


@app.get("/")
async def root():
    return {
        "message": "Welcome to the Reverse Tutoring Engine",
        "description": f"Students explain a topic to {settings.persona_name}, a curious classmate, and teachers see how well they understand it"
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


# Ensure logs directory exists
os.makedirs(settings.log_dir, exist_ok=True)
