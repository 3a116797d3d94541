from __future__ import annotations

from collections.abc import Iterator

from fastapi import Depends, Header, HTTPException, Query, Request
from sqlalchemy.orm import Session

from api.auth_scopes import AuthResult, bind_tenant_id, verify_api_key
from api.db import get_sessionmaker, set_tenant_context


def tenant_db_required(
    request: Request,
    tenant_id: str | None = Query(None),
    x_tenant_id: str | None = Header(None, alias="X-Tenant-Id"),
    _auth: AuthResult = Depends(verify_api_key),
) -> Iterator[Session]:
    """
    Tenant-bound DB session dependency.

    Contract enforced by bind_tenant_id():
      - tenant is always derived from key binding
      - a tenant_id query or X-Tenant-Id header is optional but must match
        the key tenant (403 on mismatch)
      - unbound keys are denied (400 fail-closed)
    """
    bound = bind_tenant_id(request, tenant_id)
    if x_tenant_id is not None:
        bound = bind_tenant_id(request, x_tenant_id)
    if not bound:
        # bind_tenant_id should raise, but fail closed anyway.
        raise HTTPException(
            status_code=401,
            detail={"error_code": "UNAUTHORIZED", "message": "Missing auth context"},
        )

    SessionLocal = get_sessionmaker()
    db = SessionLocal()
    request.state.db_session = db
    set_tenant_context(db, bound)

    try:
        yield db
    finally:
        db.close()


__all__ = ["tenant_db_required"]
