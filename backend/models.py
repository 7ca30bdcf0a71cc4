from pydantic import BaseModel, EmailStr, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class SessionType(str, Enum):
    QUICK_PREP = "quick_prep"
    FULL_MOCK = "full_mock"
    PREMIUM_AUDIO = "premium_audio"
    PRO = "pro"

class SessionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"

class UserRole(str, Enum):
    ROLE_CUSTOMER = "ROLE_CUSTOMER"
    ROLE_ADMIN = "ROLE_ADMIN"

class ErrorType(str, Enum):
    SESSION = "session"
    DISCOUNT = "discount"
    GENERAL = "general"

class ErrorCode(str, Enum):
    # Session errors
    SESSION_NOT_FOUND = "session_not_found"
    SESSION_EXPIRED = "session_expired"
    AI_CONNECTION_FAILED = "ai_connection_failed"
    SESSION_ALREADY_COMPLETED = "session_already_completed"
    SESSION_PAUSED = "session_paused"
    # Discount errors
    CODE_NOT_FOUND = "code_not_found"
    CODE_EXPIRED = "code_expired"
    CODE_ALREADY_USED = "code_already_used"
    CODE_NOT_APPLICABLE = "code_not_applicable"
    CODE_USAGE_LIMIT_REACHED = "code_usage_limit_reached"
    # General errors
    NETWORK_ERROR = "network_error"
    RATE_LIMIT = "rate_limit"

class AuditAction(str, Enum):
    CHECKOUT_CREATED = "CHECKOUT_CREATED"
    PAYMENT_VERIFIED = "PAYMENT_VERIFIED"
    SESSION_CREATED = "SESSION_CREATED"
    SESSION_PAUSED = "SESSION_PAUSED"
    SESSION_RESUMED = "SESSION_RESUMED"
    SESSION_ABANDONED = "SESSION_ABANDONED"
    SESSION_COMPLETED = "SESSION_COMPLETED"
    SESSION_DELETED = "SESSION_DELETED"
    PURCHASES_DELETED = "PURCHASES_DELETED"
    SUBSCRIBERS_DELETED = "SUBSCRIBERS_DELETED"
    PRO_SESSION_STARTED = "PRO_SESSION_STARTED"
    PRO_USAGE_RESET = "PRO_USAGE_RESET"
    SUBSCRIPTION_UPDATED = "SUBSCRIPTION_UPDATED"
    DISCOUNT_REDEEMED = "DISCOUNT_REDEEMED"
    DISCOUNT_CODE_CREATED = "DISCOUNT_CODE_CREATED"
    DISCOUNT_CODE_UPDATED = "DISCOUNT_CODE_UPDATED"
    ERROR_REPORTED = "ERROR_REPORTED"
    ERROR_RESOLVED = "ERROR_RESOLVED"
    LOGIN_LINK_SENT = "LOGIN_LINK_SENT"
    USER_LOGIN_SUCCESS = "USER_LOGIN_SUCCESS"
    USER_LOGIN_FAILED = "USER_LOGIN_FAILED"
    EMAIL_SENT = "EMAIL_SENT"
    EMAIL_FAILED = "EMAIL_FAILED"
    STRIPE_EVENT_FAILED = "STRIPE_EVENT_FAILED"

class EmailTemplateAlias(str, Enum):
    PURCHASE_CONFIRMATION = "purchase-confirmation"
    UPGRADE_CONFIRMATION = "upgrade-confirmation"
    SESSION_PAUSED = "session-paused"
    SESSION_PAUSED_REMINDER = "session-paused-reminder"
    LOGIN_LINK = "login-link"
    SESSION_RESULTS = "session-results"
    ERROR_RESOLUTION = "error-resolution"
    ADMIN_ERROR_ALERT = "admin-error-alert"

# ============================================================================
# DOCUMENT MODELS
# ============================================================================

class CoachingSession(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    email: str
    session_type: SessionType
    status: SessionStatus = SessionStatus.PENDING
    first_name: Optional[str] = None
    resume_text: Optional[str] = None
    job_description: Optional[str] = None
    company_url: Optional[str] = None
    prep_packet: Optional[Dict[str, Any]] = None
    paused_at: Optional[str] = None
    pause_reminder_sent_at: Optional[str] = None
    current_question_number: int = 0
    is_pro: bool = False
    stripe_checkout_session_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    amount_paid: Optional[int] = None
    upgraded_from_session: Optional[str] = None
    upgrade_credit_applied: int = 0
    discount_code_id: Optional[str] = None
    report: Optional[Dict[str, Any]] = None
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)
    completed_at: Optional[str] = None

class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str
    role: MessageRole
    content: str
    feedback: Optional[Dict[str, Any]] = None
    question_number: Optional[int] = None
    created_at: str = Field(default_factory=_now_iso)

class SessionResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str
    overall_score: Optional[int] = None
    strengths: Optional[List[str]] = None
    improvements: Optional[List[str]] = None
    recommendations: Optional[str] = None
    email_sent: bool = False
    email_sent_at: Optional[str] = None
    created_at: str = Field(default_factory=_now_iso)

class Profile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str
    full_name: Optional[str] = None
    user_id: Optional[str] = None
    is_pro_subscriber: bool = False
    pro_subscription_start: Optional[str] = None
    pro_subscription_end: Optional[str] = None
    pro_cancel_at_period_end: bool = False
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    pro_mock_sessions_used: int = 0
    pro_audio_sessions_used: int = 0
    pro_session_reset_date: Optional[str] = None
    updated_at: str = Field(default_factory=_now_iso)

class DiscountCode(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    code: str
    discount_percent: int = Field(..., ge=0, le=100)
    description: Optional[str] = None
    applicable_products: List[SessionType] = Field(default_factory=list)
    valid_from: Optional[str] = None
    valid_until: Optional[str] = None
    max_uses: Optional[int] = None
    is_active: bool = True
    created_at: str = Field(default_factory=_now_iso)

class DiscountCodeUsage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    discount_code_id: str
    email: str
    session_id: Optional[str] = None
    used_at: str = Field(default_factory=_now_iso)

class ErrorLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    error_type: str
    error_code: Optional[str] = None
    error_message: str
    user_email: Optional[str] = None
    session_id: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    ai_resolution_attempted: bool = False
    ai_resolution_successful: bool = False
    ai_resolution_response: Optional[str] = None
    escalated_to_admin: bool = False
    resolved: bool = False
    resolved_at: Optional[str] = None
    created_at: str = Field(default_factory=_now_iso)

class User(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    email: str
    role: UserRole = UserRole.ROLE_CUSTOMER
    password_hash: Optional[str] = None
    email_confirmed: bool = True
    created_at: str = Field(default_factory=_now_iso)
    last_login: Optional[str] = None

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[str] = None
    actor_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class MessageLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    postmark_message_id: Optional[str] = None
    session_id: Optional[str] = None
    recipient: EmailStr
    template_alias: EmailTemplateAlias
    subject: str
    status: str = "queued"
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None
    provider_error_type: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class CreateCheckoutRequest(BaseModel):
    session_type: SessionType
    email: EmailStr
    origin: Optional[str] = Field(None, description="Frontend origin used for success/cancel URLs")
    discount_code_id: Optional[str] = Field(None, description="Id returned by validate-discount")

class CheckoutResponse(BaseModel):
    url: str
    session_id: str
    original_price: int
    final_price: int
    upgrade_credit_applied: int = 0
    discount_applied: int = 0
    applied_discount_label: Optional[str] = None

class PortalRequest(BaseModel):
    email: EmailStr
    origin: Optional[str] = None

class ValidateDiscountRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)
    email: EmailStr
    session_type: SessionType

class DiscountValidationResponse(BaseModel):
    valid: bool
    discount_percent: int = 0
    description: Optional[str] = None
    code_id: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    error: Optional[str] = None

class VerifyPaymentRequest(BaseModel):
    email: EmailStr
    session_type: SessionType
    checkout_session_id: Optional[str] = None

class VerificationResult(BaseModel):
    verified: bool
    session_id: Optional[str] = None
    session_status: Optional[SessionStatus] = None
    is_pro: bool = False
    message: Optional[str] = None
    results: Optional[Dict[str, Any]] = None
    report: Optional[Dict[str, Any]] = None

class ProSessionRequest(BaseModel):
    email: EmailStr
    session_type: Optional[SessionType] = None
    session_id: Optional[str] = None

class CoachTurnRequest(BaseModel):
    session_id: Optional[str] = None
    session_type: SessionType
    message: Optional[str] = None
    resume: Optional[str] = None
    job_description: Optional[str] = None
    company_url: Optional[str] = None
    first_name: Optional[str] = None
    is_initial: bool = False

class CoachTurnResponse(BaseModel):
    message: str
    session_type: SessionType
    interview_complete: bool = False

class SaveDocumentsRequest(BaseModel):
    resume_text: Optional[str] = None
    job_description: Optional[str] = None
    company_url: Optional[str] = None
    first_name: Optional[str] = None

class AppendTurnRequest(BaseModel):
    role: MessageRole
    content: str = Field(..., min_length=1)
    question_number: Optional[int] = Field(None, ge=0)

class SessionEventRequest(BaseModel):
    event_type: str
    message: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

class SendResultsRequest(BaseModel):
    session_id: str
    email: EmailStr

class ErrorReportRequest(BaseModel):
    error_type: ErrorType
    error_code: Optional[ErrorCode] = None
    error_message: str
    user_email: Optional[EmailStr] = None
    session_id: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

class LoginLinkRequest(BaseModel):
    email: str
    redirect_path: Optional[str] = "/dashboard"

class TokenExchangeRequest(BaseModel):
    token: str

class AdminLoginRequest(BaseModel):
    email: EmailStr
    password: str

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    email: str
    role: UserRole

class DiscountCodeCreateRequest(BaseModel):
    code: str = Field(..., min_length=2, max_length=64)
    discount_percent: int = Field(..., ge=1, le=100)
    description: Optional[str] = None
    applicable_products: List[SessionType] = Field(default_factory=list)
    valid_from: Optional[str] = None
    valid_until: Optional[str] = None
    max_uses: Optional[int] = Field(None, ge=1)

class BulkDeleteRequest(BaseModel):
    """Either the selected ids (profile emails for subscribers) or everything in the list."""
    ids: List[str] = Field(default_factory=list)
    delete_all: bool = False
