"""
Wallet and account routes, guarded by the quota gate.

- POST   /api/wallets         (enforce_limit(wallet))
- GET    /api/wallets         (check_limits(wallet): quota shown alongside the list)
- DELETE /api/wallets/{id}
- same for /api/accounts
"""
from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field

from finplan.core.auth import get_current_user_id
from finplan.features.limits.gate import check_limits, enforce_limit
from finplan.features.resources.service import ResourceService, get_resource_service
from finplan.models.plan import ResourceKind


class CreateResourceRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)


def build_resource_router(kind: ResourceKind, prefix: str) -> APIRouter:
    router = APIRouter(prefix=prefix, tags=[f"{kind.value}s"])

    @router.post("", status_code=status.HTTP_201_CREATED, dependencies=[Depends(enforce_limit(kind))])
    def create_resource(
        body: CreateResourceRequest,
        user_id: str = Depends(get_current_user_id),
        service: ResourceService = Depends(get_resource_service),
    ):
        resource = service.create(user_id, kind, body.name)
        return {kind.value: resource.model_dump(mode="json")}

    @router.get("", dependencies=[Depends(check_limits(kind))])
    def list_resources(
        request: Request,
        user_id: str = Depends(get_current_user_id),
        service: ResourceService = Depends(get_resource_service),
    ):
        items = service.list(user_id, kind)
        return {
            "items": [item.model_dump(mode="json") for item in items],
            "limit_check": request.state.limit_check.to_dict(),
        }

    @router.delete("/{resource_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_resource(
        resource_id: str,
        user_id: str = Depends(get_current_user_id),
        service: ResourceService = Depends(get_resource_service),
    ):
        service.delete(user_id, resource_id)

    return router


wallets_router = build_resource_router(ResourceKind.WALLET, "/api/wallets")
accounts_router = build_resource_router(ResourceKind.ACCOUNT, "/api/accounts")
