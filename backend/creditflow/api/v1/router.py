from fastapi import APIRouter

from creditflow.api.v1.endpoints import credits, requests

api_v1_router = APIRouter()

api_v1_router.include_router(requests.router, prefix="/requests", tags=["requests"])
api_v1_router.include_router(credits.router, prefix="/credits", tags=["credits"])
