from collections.abc import Generator

from fastapi import Header, HTTPException
from sqlalchemy.orm import Session

from payflow.db.session import SessionLocal


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_tenant_id(x_tenant_id: str | None = Header(default=None)) -> str:
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise HTTPException(status_code=400, detail="X-Tenant-ID header is required")
    if len(tenant_id) > 64:
        raise HTTPException(status_code=400, detail="X-Tenant-ID header is too long")
    return tenant_id
