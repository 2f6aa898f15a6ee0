"""Turn claims resolved by the identity proxy into a request scope."""

from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from . import models
from .database import get_db
from .scope import RequestScope

# purpose: consume already-authenticated actor and lab claims
# inputs: X-Actor-Id and X-Lab-Id headers set by the upstream identity proxy
# outputs: RequestScope for services; 401 when claims are absent, 403 for unknown labs
# status: active


def get_request_scope(
    request: Request,
    x_actor_id: str | None = Header(default=None),
    x_lab_id: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> RequestScope:
    if not x_actor_id or not x_lab_id:
        raise HTTPException(status_code=401, detail="Missing identity claims")
    try:
        lab_id = UUID(x_lab_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Malformed lab claim")
    if db.get(models.Lab, lab_id) is None:
        raise HTTPException(status_code=403, detail="Lab not available for actor")
    client_host = request.client.host if request.client else None
    return RequestScope(actor_id=x_actor_id, lab_id=lab_id, ip_address=client_host)
