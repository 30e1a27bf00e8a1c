from fastapi import APIRouter

from cardgen.api.routes import cards, utils

api_router = APIRouter()
api_router.include_router(utils.router)
api_router.include_router(cards.router)
