"""Read-only HTTP status endpoints for a running AIRouter.

Exposes provider, breaker, health and cache state for load balancers and
dashboards. Routing itself is not served over HTTP.

Usage:
    pip install "ai-router-core[http]"

    from ai_router.http_server import create_status_app
    app = create_status_app(router)
    uvicorn.run(app, host="127.0.0.1", port=8000)
"""

from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from ai_router.router import AIRouter


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    service: str
    available_providers: int


class ProviderStatus(BaseModel):
    """Status of one configured provider."""

    id: str
    enabled: bool
    priority: Optional[int] = None
    capabilities: List[str]
    circuit_state: str
    consecutive_failures: int
    healthy: Optional[bool] = None
    average_latency_ms: Optional[float] = None


def create_status_app(router: AIRouter) -> FastAPI:
    """Build a FastAPI app bound to one router instance."""
    app = FastAPI(
        title="AI Router",
        description="Status endpoints for the AI capability router",
        version="1.0.0",
    )

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health() -> HealthResponse:
        """Report ok while at least one provider is enabled.

        Returns 503 when every provider is disabled.
        """
        if not router.is_available():
            raise HTTPException(status_code=503, detail="No providers are enabled")
        enabled = sum(1 for pid in router.registry.provider_ids if router.registry.is_enabled(pid))
        return HealthResponse(status="ok", service="ai-router", available_providers=enabled)

    @app.get("/stats", tags=["Status"])
    async def stats() -> Dict[str, Any]:
        return router.get_stats()

    @app.get("/providers", response_model=List[ProviderStatus], tags=["Status"])
    async def providers() -> List[ProviderStatus]:
        result = []
        for provider_id, info in router.get_stats()["providers"].items():
            breaker = info["circuit_breaker"]
            health = info["health"] or {}
            result.append(
                ProviderStatus(
                    id=provider_id,
                    enabled=info["enabled"],
                    priority=info["priority"],
                    capabilities=info["capabilities"],
                    circuit_state=breaker["state"],
                    consecutive_failures=breaker["consecutive_failures"],
                    healthy=health.get("healthy"),
                    average_latency_ms=health.get("average_latency_ms"),
                )
            )
        return result

    return app
