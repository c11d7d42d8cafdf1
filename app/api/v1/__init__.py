from fastapi import APIRouter
from app.api.v1.endpoints import reverse_tutoring

api_router = APIRouter()
api_router.include_router(reverse_tutoring.router, prefix="/reverse-tutoring", tags=["reverse-tutoring"])
