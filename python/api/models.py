"""
Pydantic request/response schemas for the Client Verification Portal API

Record fields keep their column names; dashboard counters and a few flags
use the camelCase names the admin UI reads.
"""

from typing import List, Optional, Dict, Any

from pydantic import BaseModel, Field, field_validator


# ============================================
# AUTH
# ============================================

class LoginRequest(BaseModel):
    """Admin email/password login."""
    email: str = Field(..., min_length=3, max_length=254, description="Admin email")
    password: str = Field(..., min_length=1, max_length=256, description="Admin password")


class TwoFactorRequest(BaseModel):
    """Second-factor code from an authenticator app."""
    code: str = Field(..., min_length=6, max_length=10, description="6-digit TOTP code")

    @field_validator('code')
    @classmethod
    def strip_code(cls, v: str) -> str:
        return v.replace(" ", "").strip()


class AdminResponse(BaseModel):
    """Authenticated administrator."""
    id: int
    email: str
    created_at: Optional[str] = None
    two_factor_enabled: bool = Field(default=False, alias="twoFactorEnabled")

    model_config = {"populate_by_name": True}


class LoginResponse(BaseModel):
    """Session token, possibly limited to the second-factor step."""
    admin: AdminResponse
    token: str = Field(..., description="Bearer token for the Authorization header")
    requires_2fa: bool = Field(default=False, alias="requires2FA")

    model_config = {"populate_by_name": True}


class TokenResponse(BaseModel):
    """Full-scope session token issued after the second factor."""
    token: str
    admin: AdminResponse


# ============================================
# CONTACT RECORDS
# ============================================

class ContactFields(BaseModel):
    """Editable contact fields.

    Content rules (required fields, email syntax, lengths) are enforced by
    the shared row validator so admin edits, verification submissions and
    imports behave identically.
    """
    client_number: Optional[str] = Field(default=None, max_length=100)
    first_name: Optional[str] = Field(default=None, max_length=200)
    last_name: Optional[str] = Field(default=None, max_length=200)
    phone_number: Optional[str] = Field(default=None, max_length=50)
    alt_number: Optional[str] = Field(default=None, max_length=50)
    address: Optional[str] = Field(default=None, max_length=1000)
    email: Optional[str] = Field(default=None, max_length=254)

    def submitted(self) -> Dict[str, Any]:
        """Only the fields the caller actually sent."""
        return self.model_dump(exclude_unset=True)


class VerificationSubmitRequest(ContactFields):
    """Client's confirm-or-update submission."""
    action: str = Field(..., description="confirm or update")


class PublicContactRecord(BaseModel):
    """Record as shown on the public verification page."""
    id: int
    client_number: str
    first_name: str
    last_name: str
    phone_number: str
    alt_number: Optional[str] = None
    address: str
    email: str
    status: str
    group_template: Optional[str] = None


class ContactRecordResponse(PublicContactRecord):
    """Record as shown to administrators (never includes the token)."""
    has_changes: bool = Field(default=False, alias="hasChanges")
    token_expiry: Optional[str] = None
    last_updated: Optional[str] = None
    created_at: Optional[str] = None

    model_config = {"populate_by_name": True}


class UserListResponse(BaseModel):
    """One page of the admin roster."""
    users: List[ContactRecordResponse]
    total: int = Field(..., ge=0)
    page: int = Field(..., ge=1)
    limit: int = Field(..., ge=1)


class VerifyFetchResponse(BaseModel):
    """Public fetch result."""
    user: PublicContactRecord
    has_changes: bool = Field(default=False, alias="hasChanges")

    model_config = {"populate_by_name": True}


class VerifySubmitResponse(BaseModel):
    """Public submit result."""
    success: bool = True
    message: str
    user: PublicContactRecord


# ============================================
# IMPORT / RESEND
# ============================================

class ImportFailureResponse(BaseModel):
    row: int
    reason: str
    field: Optional[str] = None
    client_number: Optional[str] = None


class BulkUpdateResponse(BaseModel):
    """Token issuance and mail fan-out outcome."""
    updated_count: int = Field(default=0, alias="updatedCount")
    emails_sent: int = Field(default=0, alias="emailsSent")
    email_failures: List[Dict[str, Any]] = Field(default_factory=list, alias="emailFailures")

    model_config = {"populate_by_name": True}


class ImportResponse(BaseModel):
    """Structured import report."""
    success: bool = True
    filename: str
    total_rows: int = Field(..., ge=0)
    successful: int = Field(..., ge=0)
    created: int = Field(default=0, ge=0)
    updated: int = Field(default=0, ge=0)
    failures: List[ImportFailureResponse] = Field(default_factory=list)
    bulk_update: Optional[BulkUpdateResponse] = Field(default=None, alias="bulkUpdate")
    bulk_update_error: Optional[str] = Field(default=None, alias="bulkUpdateError")
    processing_time_ms: int = Field(default=0, ge=0)

    model_config = {"populate_by_name": True}


class ResendResponse(BaseModel):
    ok: bool = True
    message: str


# ============================================
# DASHBOARD / HEALTH
# ============================================

class StatsResponse(BaseModel):
    """Dashboard counters."""
    total_users: int = Field(..., ge=0, alias="totalUsers")
    confirmed: int = Field(..., ge=0)
    updated: int = Field(..., ge=0)
    pending: int = Field(..., ge=0)
    confirmation_rate: float = Field(..., ge=0, le=100, alias="confirmationRate")
    today_updates: int = Field(..., ge=0, alias="todayUpdates")
    recent_update_count: int = Field(..., ge=0, alias="recentUpdateCount")

    model_config = {"populate_by_name": True}


class HealthResponse(BaseModel):
    """Response schema for health check endpoint."""
    status: str = Field(default="healthy", description="Service status")
    database: Dict[str, Any] = Field(default_factory=dict, description="Database health")
    records: int = Field(default=0, ge=0, description="Number of contact records")
    memory_usage_mb: Optional[float] = Field(
        default=None,
        description="Current memory usage in MB"
    )
    uptime_seconds: Optional[int] = Field(
        default=None,
        description="Server uptime in seconds"
    )


class ErrorDetail(BaseModel):
    """Detailed error information."""
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    field: Optional[str] = Field(default=None, description="Field that caused error")
    suggestion: Optional[str] = Field(default=None, description="How to fix the error")
    timestamp: str = Field(..., description="Error timestamp (ISO 8601)")


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    error: ErrorDetail
