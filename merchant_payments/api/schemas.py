"""
Pydantic schemas for API request/response models.

Amounts and phone numbers are accepted loosely here and validated by the
core services, so every validation failure surfaces as `InvalidInput`.
"""
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator


class StkPushRequest(BaseModel):
    """Request schema for a merchant-initiated STK push."""

    phone_number: str = Field(..., description="Payer phone (07XX, 7XX or 2547XX formats)")
    amount: Union[float, str] = Field(..., description="Amount in shillings")

    model_config = {
        "json_schema_extra": {
            "examples": [{"phone_number": "0712345678", "amount": 50}]
        }
    }


class PaymentRequest(StkPushRequest):
    """Request schema for an admin-initiated payment on behalf of a merchant."""

    merchant_id: str = Field(..., min_length=1, description="Merchant identifier")

    model_config = {
        "json_schema_extra": {
            "examples": [{"phone_number": "0712345678", "amount": 50, "merchant_id": "m1"}]
        }
    }


class CustomerPaymentRequest(BaseModel):
    """Request schema for a payment started by scanning a merchant QR code."""

    phone_number: str = Field(..., description="Payer phone")
    amount: Union[float, str] = Field(..., description="Amount in shillings")
    qr_data: Dict[str, Any] = Field(
        ..., description="Decoded QR payload (merchantId, businessName, businessShortCode)"
    )


class InitiationResponse(BaseModel):
    """Response schema for an accepted STK push."""

    transaction_id: str = Field(..., description="Transaction ID")
    correlation_id: str = Field(..., description="Gateway CheckoutRequestID")
    merchant_request_id: Optional[str] = Field(default=None, description="Gateway MerchantRequestID")
    customer_message: Optional[str] = Field(default=None, description="Message from the gateway")
    status: str = Field(..., description="Always pending on creation")
    is_guest: bool = Field(default=False, description="True when no registered merchant matched")


class CallbackAcknowledgement(BaseModel):
    """Acknowledgement returned to the gateway for every callback."""

    ResultCode: int = 0
    ResultDesc: str = "Callback received successfully"


class TransactionStatusResponse(BaseModel):
    """Public status-poll response."""

    transaction_id: str
    correlation_id: Optional[str] = None
    status: str
    amount: float
    receipt_number: Optional[str] = None
    result_desc: Optional[str] = None
    updated_at: Optional[str] = None


class TransactionResponse(BaseModel):
    """Full transaction view for the owning merchant."""

    id: str
    merchant_id: Optional[str] = None
    guest_merchant_id: Optional[str] = None
    guest_merchant_info: Optional[Dict[str, Any]] = None
    is_guest: bool
    correlation_id: Optional[str] = None
    merchant_request_id: Optional[str] = None
    amount: float
    phone_number: str
    status: str
    receipt_number: Optional[str] = None
    result_code: Optional[int] = None
    result_desc: Optional[str] = None
    transaction_date: Optional[str] = None
    account_reference: Optional[str] = None
    description: Optional[str] = None
    payment_type: str
    source: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    callback_received_at: Optional[str] = None


class TransactionListResponse(BaseModel):
    """Response schema for transaction listing."""

    transactions: List[TransactionResponse]
    total: int
    filters: Dict[str, Any]


class StatusUpdateRequest(BaseModel):
    """Manual status override."""

    status: str = Field(..., description="pending, success, failed, cancelled or error")
    reason: Optional[str] = Field(default=None, max_length=500, description="Why the status changed")


class GenerateQRRequest(BaseModel):
    """Request schema for a merchant QR payment link."""

    description: Optional[str] = Field(default=None, max_length=100)
    reference: Optional[str] = Field(default=None, max_length=50)
    business_name: Optional[str] = Field(default=None, max_length=100)
    dynamic_amount: bool = Field(default=True, description="Customer enters the amount")


class QRLinkResponse(BaseModel):
    """Payment link to encode as a QR code."""

    qr_url: str
    merchant_id: str
    business_name: str
    dynamic_amount: bool
    qr_data: Dict[str, Any]


class MerchantRegistrationRequest(BaseModel):
    """Request schema for registering a merchant."""

    id: Optional[str] = Field(
        default=None, max_length=128, description="Identity-provider id; generated when omitted"
    )
    name: str = Field(..., min_length=1, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=20)
    shortcode: Optional[str] = Field(default=None, max_length=20)
    account_type: str = Field(default="paybill", description="paybill or till")

    @field_validator("account_type")
    @classmethod
    def validate_account_type(cls, v: str) -> str:
        """Validate account type."""
        if v.lower() not in ("paybill", "till"):
            raise ValueError("account_type must be 'paybill' or 'till'")
        return v.lower()

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v


class MerchantResponse(BaseModel):
    """Merchant profile."""

    id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    shortcode: Optional[str] = None
    account_type: str
    status: str


class MerchantRegistrationResponse(MerchantResponse):
    """Registration result; the API key is only ever shown here."""

    api_key: str


class TokenCheckResponse(BaseModel):
    """Gateway connectivity check."""

    success: bool
    message: str
    token_preview: str
    base_url: str
    environment: str


class BackfillResponse(BaseModel):
    """Result of the correlation-id backfill."""

    updated: int


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class ErrorResponse(BaseModel):
    """Error body for every failed request."""

    kind: str
    message: str
