"""Webhook management and test-ping API."""

import json
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models.webhook import WebhookDeliveryLog, WebhookEndpoint
from app.services.webhook_dispatcher import WebhookDispatcher, get_dispatcher
from app.services.webhook_events import ALL_EVENTS, get_event_category, get_event_description, validate_events
from app.services.webhook_signature import generate_secret

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

RECENT_DELIVERIES = 10


# ── Schemas ──────────────────────────────────────────────
def _require_https(url: str) -> str:
    if not url.startswith("https://"):
        raise ValueError("URL must use HTTPS")
    return url


class WebhookCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    url: str = Field(..., max_length=2048)
    events: list[str] = Field(..., min_length=1)

    @field_validator("url")
    @classmethod
    def _https(cls, v):
        return _require_https(v)


class WebhookUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    url: Optional[str] = Field(None, max_length=2048)
    events: Optional[list[str]] = Field(None, min_length=1)
    is_active: Optional[bool] = None
    regenerate_secret: bool = False

    @field_validator("url")
    @classmethod
    def _https(cls, v):
        return v if v is None else _require_https(v)


class WebhookOut(BaseModel):
    id: str
    name: str
    url: str
    events: list[str]
    is_active: bool
    consecutive_failures: int
    last_delivery_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, wh: WebhookEndpoint, **extra):
        return cls(
            id=wh.id,
            name=wh.name,
            url=wh.url,
            events=wh.event_list,
            is_active=bool(wh.is_active),
            consecutive_failures=wh.consecutive_failures or 0,
            last_delivery_at=wh.last_delivery_at,
            last_success_at=wh.last_success_at,
            created_at=wh.created_at,
            updated_at=wh.updated_at,
            **extra,
        )


class WebhookWithSecret(WebhookOut):
    """Only returned on creation or when the secret is regenerated."""

    secret: Optional[str] = None


class DeliveryOut(BaseModel):
    id: str
    webhook_id: str
    event_type: str
    status: str
    attempt: int
    http_status_code: Optional[int] = None
    response_body: Optional[str] = None
    error: Optional[str] = None
    delivered_at: Optional[datetime] = None
    scheduled_for: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class WebhookDetail(WebhookOut):
    recent_deliveries: list[DeliveryOut] = Field(default_factory=list)
    delivery_count: int = 0


class EventOut(BaseModel):
    name: str
    description: str
    category: str


class PingResultOut(BaseModel):
    success: bool
    http_status_code: Optional[int] = None
    response_body: Optional[str] = None
    error: Optional[str] = None
    delivered_at: Optional[datetime] = None


# ── Dependencies ─────────────────────────────────────────
async def get_tenant_id(x_tenant_id: Optional[str] = Header(None)) -> str:
    if not x_tenant_id:
        raise HTTPException(400, "X-Tenant-Id header is required")
    return x_tenant_id


def get_webhook_dispatcher() -> WebhookDispatcher:
    return get_dispatcher()


async def _get_owned(db: AsyncSession, webhook_id: str, tenant_id: str) -> WebhookEndpoint:
    result = await db.execute(
        select(WebhookEndpoint).where(
            WebhookEndpoint.id == webhook_id,
            WebhookEndpoint.tenant_id == tenant_id,
        )
    )
    wh = result.scalar_one_or_none()
    if not wh:
        raise HTTPException(404, "Webhook not found")
    return wh


def _dump_events(events: list[str]) -> str:
    return json.dumps(list(dict.fromkeys(events)))


def _check_events(events: list[str]) -> None:
    check = validate_events(events)
    if not check.valid:
        raise HTTPException(400, f"Invalid events: {', '.join(check.invalid)}")


# ── Endpoints ────────────────────────────────────────────
@router.get("/events", response_model=list[EventOut])
async def list_event_types():
    """List all subscribable event types."""
    return [
        EventOut(name=e, description=get_event_description(e), category=get_event_category(e))
        for e in ALL_EVENTS
    ]


@router.post("/", response_model=WebhookWithSecret, status_code=201)
async def create_webhook(
    data: WebhookCreate,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    _check_events(data.events)

    secret = generate_secret()
    wh = WebhookEndpoint(
        tenant_id=tenant_id,
        name=data.name,
        url=data.url,
        secret=secret,
        events=_dump_events(data.events),
    )
    db.add(wh)
    await db.commit()
    await db.refresh(wh)
    return WebhookWithSecret.from_model(wh, secret=secret)


@router.get("/", response_model=list[WebhookOut])
async def list_webhooks(
    active: Optional[bool] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(WebhookEndpoint).where(WebhookEndpoint.tenant_id == tenant_id)
    if active is not None:
        stmt = stmt.where(WebhookEndpoint.is_active == active)
    stmt = stmt.order_by(WebhookEndpoint.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return [WebhookOut.from_model(wh) for wh in result.scalars().all()]


@router.get("/{webhook_id}", response_model=WebhookDetail)
async def get_webhook(
    webhook_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    wh = await _get_owned(db, webhook_id, tenant_id)

    recent = await db.execute(
        select(WebhookDeliveryLog)
        .where(WebhookDeliveryLog.webhook_id == wh.id)
        .order_by(WebhookDeliveryLog.created_at.desc())
        .limit(RECENT_DELIVERIES)
    )
    count = (await db.execute(
        select(func.count(WebhookDeliveryLog.id)).where(WebhookDeliveryLog.webhook_id == wh.id)
    )).scalar() or 0

    return WebhookDetail.from_model(
        wh,
        recent_deliveries=[DeliveryOut.model_validate(d) for d in recent.scalars().all()],
        delivery_count=count,
    )


@router.patch("/{webhook_id}", response_model=WebhookWithSecret)
async def update_webhook(
    webhook_id: str,
    data: WebhookUpdate,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    wh = await _get_owned(db, webhook_id, tenant_id)

    updates = data.model_dump(exclude_unset=True, exclude={"regenerate_secret"})
    if updates.get("events") is not None:
        _check_events(updates["events"])
        updates["events"] = _dump_events(updates["events"])

    for key, val in updates.items():
        if val is not None:
            setattr(wh, key, val)

    # Re-enabling starts the failure count over
    if data.is_active is True:
        wh.consecutive_failures = 0

    new_secret = None
    if data.regenerate_secret:
        new_secret = generate_secret()
        wh.secret = new_secret

    await db.commit()
    await db.refresh(wh)
    return WebhookWithSecret.from_model(wh, secret=new_secret)


@router.delete("/{webhook_id}", status_code=204)
async def delete_webhook(
    webhook_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    wh = await _get_owned(db, webhook_id, tenant_id)
    await db.delete(wh)
    await db.commit()


@router.get("/{webhook_id}/deliveries", response_model=list[DeliveryOut])
async def list_deliveries(
    webhook_id: str,
    status: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Delivery attempt history for a webhook, newest first."""
    await _get_owned(db, webhook_id, tenant_id)
    stmt = select(WebhookDeliveryLog).where(WebhookDeliveryLog.webhook_id == webhook_id)
    if status:
        stmt = stmt.where(WebhookDeliveryLog.status == status)
    stmt = stmt.order_by(WebhookDeliveryLog.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.post("/{webhook_id}/test", response_model=PingResultOut)
async def test_webhook(
    webhook_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
):
    """Send a test.ping to the endpoint and report what happened."""
    await _get_owned(db, webhook_id, tenant_id)
    result = await dispatcher.send_test_webhook(webhook_id)
    return PingResultOut(**result.to_dict())
