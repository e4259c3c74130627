"""Health endpoints."""

from __future__ import annotations

from fastapi import APIRouter, status

from ...config import settings

router = APIRouter(tags=["health"])


@router.get("/health", status_code=status.HTTP_200_OK)
def health_root() -> dict:
    """Simple health check endpoint that doesn't require any dependencies."""
    return {"status": "ok"}


def _get_osrm_health_check():
    """Lazy import to avoid startup failures."""
    from ...services.routing.osrm_client import check_health as osrm_health_check
    return osrm_health_check


@router.get("/health/osrm", status_code=status.HTTP_200_OK)
def health_osrm() -> dict:
    """Check OSRM service health. Routing falls back to straight-line estimates when it is down."""
    osrm_health_check = _get_osrm_health_check()
    healthy = osrm_health_check()
    return {
        "service": "osrm",
        "healthy": healthy,
        "base_url": settings.osrm_base_url,
        "fallback": None if healthy else "haversine",
    }


@router.get("/health/database", status_code=status.HTTP_200_OK)
def check_database() -> dict:
    """Check which dispatch store backs the API and whether it answers."""
    from ...db.supabase import get_supabase_client
    from ..dependencies import store

    supabase = get_supabase_client()
    if not supabase:
        return {
            "configured": False,
            "backend": "memory",
            "message": "Supabase not configured. Set CR_SUPABASE_URL and CR_SUPABASE_KEY environment variables.",
        }

    try:
        orders = store().select("orders", status="ready")
        return {
            "configured": True,
            "connected": True,
            "backend": "supabase",
            "ready_orders": len(orders),
            "message": f"Database connected. Found {len(orders)} ready orders.",
        }
    except Exception as exc:
        return {
            "configured": True,
            "connected": False,
            "backend": "supabase",
            "error": str(exc),
            "message": f"Database connection error: {exc}",
        }
