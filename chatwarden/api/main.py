"""FastAPI admin backend for a running engine.

Endpoints used by moderators and operators:
- GET/PUT /tenants/{tenant_id}/policy
- POST /tenants/{tenant_id}/unlock
- GET /tenants/{tenant_id}/actors/{actor_id}
- DELETE /tenants/{tenant_id}/actors/{actor_id}/warnings
- PUT/DELETE /tenants/{tenant_id}/trusted/{actor_id}
- POST /actors/{actor_id}/verify

The app wraps one ModerationEngine instance handed to create_app().
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI, HTTPException

from chatwarden import __version__
from chatwarden.models.policy import TenantPolicy
from chatwarden.services.moderation_service import ModerationEngine


def create_app(engine: ModerationEngine) -> FastAPI:
    app = FastAPI(title="chatwarden admin API", version=__version__)

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/tenants/{tenant_id}/policy", response_model=TenantPolicy)
    async def get_policy(tenant_id: str) -> TenantPolicy:
        return await engine.get_policy(tenant_id)

    @app.put("/tenants/{tenant_id}/policy")
    async def put_policy(tenant_id: str, policy: TenantPolicy) -> Dict[str, Any]:
        """Replace the tenant's policy; the next event already sees it."""
        persisted = await engine.update_policy(tenant_id, policy)
        return {"tenant_id": tenant_id, "persisted": persisted, "policy": policy.model_dump(mode="json")}

    @app.post("/tenants/{tenant_id}/unlock")
    async def unlock(tenant_id: str) -> Dict[str, Any]:
        restored = await engine.unlock(tenant_id)
        return {"tenant_id": tenant_id, "channels_restored": restored}

    @app.get("/tenants/{tenant_id}/actors/{actor_id}")
    def actor_status(tenant_id: str, actor_id: str) -> Dict[str, Any]:
        status = engine.actor_status(tenant_id, actor_id)
        if status is None:
            raise HTTPException(status_code=404, detail="actor has no escalation state in this tenant")
        return status

    @app.delete("/tenants/{tenant_id}/actors/{actor_id}/warnings")
    async def clear_warnings(tenant_id: str, actor_id: str) -> Dict[str, Any]:
        cleared = await engine.clear_warnings(tenant_id, actor_id)
        return {"tenant_id": tenant_id, "actor_id": actor_id, "cleared": cleared}

    @app.put("/tenants/{tenant_id}/trusted/{actor_id}")
    async def trust(tenant_id: str, actor_id: str) -> Dict[str, Any]:
        await engine.set_trusted(tenant_id, actor_id, True)
        return {"tenant_id": tenant_id, "actor_id": actor_id, "trusted": True}

    @app.delete("/tenants/{tenant_id}/trusted/{actor_id}")
    async def untrust(tenant_id: str, actor_id: str) -> Dict[str, Any]:
        await engine.set_trusted(tenant_id, actor_id, False)
        return {"tenant_id": tenant_id, "actor_id": actor_id, "trusted": False}

    @app.post("/actors/{actor_id}/verify")
    async def verify(actor_id: str) -> Dict[str, Any]:
        await engine.mark_verified(actor_id, True)
        return {"actor_id": actor_id, "verified": True}

    return app
