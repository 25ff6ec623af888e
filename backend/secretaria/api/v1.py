# secretaria/api/v1.py
from fastapi import APIRouter
from secretaria.api.endpoints import status
from secretaria.modules.chat.routers import chat_router

api_v1_router = APIRouter()

api_v1_router.include_router(status.router)
api_v1_router.include_router(chat_router, prefix="/chat")
