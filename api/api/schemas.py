"""Shared Pydantic response models for API endpoints.

These schemas ensure that endpoint responses are validated and documented
in the OpenAPI schema.  Routers import from here to avoid duplication.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Access schemas
# ---------------------------------------------------------------------------


class OkResponse(BaseModel):
    ok: bool = True


class AccessMeResponse(BaseModel):
    """Caller's own classification."""

    email: str
    classification: str
    blocked: bool
    reason: str | None = None


class BlockActionResponse(BaseModel):
    ok: bool = True
    email: str
    blocked: bool
    changed: bool = True


class AccessListResponse(BaseModel):
    """Contents of the allow, block, and admin lists."""

    allowed: list[dict[str, Any]] = Field(default_factory=list)
    blocked: list[dict[str, Any]] = Field(default_factory=list)
    admins: list[dict[str, Any]] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Contract schemas
# ---------------------------------------------------------------------------


class ContractDraftResponse(BaseModel):
    id: str


class ContractSignResponse(BaseModel):
    """Response after capturing a signature."""

    ok: bool = True
    acceptance_id: str
    status: str
    emailed: bool
    email_error: str | None = None


class ContractApproveResponse(BaseModel):
    """Response after an admin approval."""

    ok: bool = True
    status: str
    approved_at: str | None = None
    emailed: bool
    email_error: str | None = None


class LatestContractResponse(BaseModel):
    """Existence check for the newest matching contract."""

    exists: bool
    status: str | None = None
    approved: bool | None = None
    id: str | None = None


# ---------------------------------------------------------------------------
# Invoice schemas
# ---------------------------------------------------------------------------


class InvoiceResponse(BaseModel):
    """Response after rendering (and optionally emailing) an invoice."""

    ok: bool = True
    filename: str
    total: float
    currency: str
    emailed: bool
    email_id: str | None = None
    email_error: str | None = None
