from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from finplan.models.plan import ResourceKind


class OwnedResource(BaseModel):
    """A quota-bounded resource (wallet, account, ...). Live while deleted_at is None."""
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    kind: ResourceKind
    name: str
    created_at: datetime
    deleted_at: Optional[datetime] = None
