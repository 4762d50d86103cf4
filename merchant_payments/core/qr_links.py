"""Payment links for merchant QR codes. Image rendering is left to the client."""
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from merchant_payments.database.models import Merchant

QR_PAYLOAD_VERSION = "1.0"


def build_qr_payment_link(
    merchant: Merchant,
    frontend_url: str,
    shortcode: str,
    description: Optional[str] = None,
    reference: Optional[str] = None,
    business_name: Optional[str] = None,
    dynamic_amount: bool = True,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Build the `/pay` URL a merchant's QR code should encode.

    The query string carries the same fields the customer-payment endpoint
    expects back as `qr_data`.
    """
    now = now or datetime.now(timezone.utc)
    name = business_name or merchant.name or "Merchant Store"
    qr_data = {
        "merchantId": merchant.id,
        "businessName": name,
        "businessShortCode": merchant.shortcode or shortcode,
        "description": description or "Payment",
        "reference": reference or f"QR_{int(now.timestamp() * 1000)}",
        "timestamp": now.isoformat(),
        "version": QR_PAYLOAD_VERSION,
        "type": "merchant_payment",
        "dynamicAmount": "true" if dynamic_amount else "false",
    }
    return {
        "qr_url": f"{frontend_url}/pay?{urlencode(qr_data)}",
        "merchant_id": merchant.id,
        "business_name": name,
        "dynamic_amount": dynamic_amount,
        "qr_data": qr_data,
    }
