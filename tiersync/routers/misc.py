from __future__ import annotations

from fastapi import APIRouter, Depends

from tiersync.core.container import Services, get_services

router = APIRouter(tags=["misc"])

@router.get("/api/ping")
async def ping():
    return {"ok": True}

@router.get("/api/health")
async def health(services: Services = Depends(get_services)):
    settings = services.settings
    return {
        "ok": True,
        "stripe_configured": services.gateway.configured,
        "webhook_secret_configured": bool(settings.stripe_webhook_secret),
        "ordering_guard": settings.reconcile_ordering_guard,
        "reconcile_timeout_seconds": settings.reconcile_timeout_seconds,
    }
