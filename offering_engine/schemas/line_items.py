"""
schemas/line_items.py — Pydantic models for order line-item endpoints

Business Rules:
- Every mutating request carries the version the caller last read
- action must be one of the lifecycle actions (checked by the service)
- Bulk requests are capped at settings.bulk_max_items
- Cancellation always needs a non-blank reason

Called by: routers/line_items.py
Depends on: pydantic
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ..models import (
    ChangeType,
    ClientReviewStatus,
    FulfillmentStatus,
    PublisherAcceptanceStatus,
)


# ── Requests ─────────────────────────────────────────────────────────


class LineItemCreate(BaseModel):
    client_id: UUID
    target_page_id: UUID | None = None
    target_page_url: str | None = None
    anchor_text: str | None = None
    assigned_domain: str | None = None
    assigned_domain_id: UUID | None = None
    metadata: dict[str, Any] | None = None


class AddLineItemsRequest(BaseModel):
    items: list[LineItemCreate] = Field(min_length=1)
    reason: str | None = None


class TransitionRequest(BaseModel):
    expected_version: int = Field(ge=1)
    action: str
    payload: dict[str, Any] | None = None
    reason: str | None = None


class BulkTarget(BaseModel):
    line_item_id: UUID
    expected_version: int = Field(ge=1)


class BulkTransitionRequest(BaseModel):
    targets: list[BulkTarget] = Field(min_length=1)
    action: str
    payload: dict[str, Any] | None = None
    reason: str | None = None


class CancelLineItemsRequest(BaseModel):
    targets: list[BulkTarget] = Field(min_length=1)
    reason: str

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("A cancellation reason is required")
        return v


# ── Responses ────────────────────────────────────────────────────────


class LineItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    client_id: UUID
    target_page_id: UUID | None = None
    target_page_url: str | None = None
    anchor_text: str | None = None
    status: FulfillmentStatus
    publisher_status: PublisherAcceptanceStatus
    client_review_status: ClientReviewStatus
    client_review_notes: str | None = None
    assigned_domain: str | None = None
    assigned_domain_id: UUID | None = None
    assigned_offering_id: UUID | None = None
    assigned_publisher_id: UUID | None = None
    assigned_at: datetime | None = None
    estimated_price: int | None = None
    approved_price: int | None = None
    wholesale_price: int | None = None
    final_price: int | None = None
    service_fee: int | None = None
    currency: str
    publisher_accepted_at: datetime | None = None
    delivered_url: str | None = None
    delivered_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    exception_reason: str | None = None
    # "meta" first: on the ORM class "metadata" is the SQLAlchemy MetaData
    metadata: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("meta", "metadata")
    )
    display_order: int = 0
    version: int
    created_at: datetime | None = None
    modified_at: datetime | None = None
    modified_by: str | None = None


class LineItemChangeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    line_item_id: UUID | None = None
    order_id: UUID | None = None
    website_id: UUID | None = None
    change_type: ChangeType
    previous_value: Any = None
    new_value: Any = None
    changed_by: str
    change_reason: str | None = None
    batch_id: UUID | None = None
    changed_at: datetime


class BatchResultOut(BaseModel):
    batch_id: UUID
    line_items: list[LineItemOut]


class OrderSummaryOut(BaseModel):
    order_id: UUID
    total: int
    by_status: dict[str, int]
    total_value: int
    delivered_count: int
    pending_count: int


class OrderLineItemsOut(BaseModel):
    order_id: UUID
    line_items: list[LineItemOut]
    summary: OrderSummaryOut
