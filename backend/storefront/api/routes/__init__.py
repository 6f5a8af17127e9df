from fastapi import APIRouter

from storefront.api.routes import health, stripe_webhook

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(stripe_webhook.router, tags=["stripe"])
