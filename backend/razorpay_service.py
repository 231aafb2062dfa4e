"""
Razorpay Payment Service
Creates gateway orders and checks checkout signatures for gym purchases
"""

import httpx
import hmac
import hashlib
import logging
import secrets
from typing import Optional, Dict, Any
from config import settings
from encryption import mask_key_id
from payment_errors import GatewayError

logger = logging.getLogger(__name__)


KEY_ID_PREFIX = "rzp_"

# Amount used when checking a key pair with a throwaway order (1 INR)
TEST_ORDER_AMOUNT_PAISE = 100


def generate_receipt() -> str:
    """Receipt ids are capped at 40 chars by the gateway"""
    return f"rcpt_{secrets.token_hex(12)}"


class RazorpayService:
    """Service for Razorpay payment operations"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = (base_url or settings.RAZORPAY_BASE_URL).rstrip("/")
        self.currency = settings.PAYMENT_CURRENCY
        self.timeout = timeout or settings.GATEWAY_TIMEOUT_SECONDS
        # Tests swap in httpx.MockTransport
        self.transport = transport
        self.headers = {"Content-Type": "application/json"}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport, timeout=self.timeout)

    def get_configuration_status(self) -> Dict[str, Any]:
        """
        Get platform default key status without exposing actual keys.
        Useful for super admin diagnostics.
        """
        key_id = settings.RAZORPAY_KEY_ID or ""
        key_secret = settings.RAZORPAY_KEY_SECRET or ""

        issues = []
        if not key_id:
            issues.append("RAZORPAY_KEY_ID is not set")
        elif not key_id.startswith(KEY_ID_PREFIX):
            issues.append("RAZORPAY_KEY_ID has invalid format (should start with rzp_test_ or rzp_live_)")
        if not key_secret:
            issues.append("RAZORPAY_KEY_SECRET is not set")
        if key_id != key_id.strip() or key_secret != key_secret.strip():
            issues.append("Razorpay keys have leading/trailing whitespace")
        if not settings.RAZORPAY_ENCRYPTION_KEY:
            issues.append("RAZORPAY_ENCRYPTION_KEY is not set; gyms cannot save their own keys")

        mode = "unknown"
        if key_id.startswith("rzp_test_"):
            mode = "test"
        elif key_id.startswith("rzp_live_"):
            mode = "live"

        return {
            "is_configured": bool(key_id and key_secret),
            "key_id_preview": mask_key_id(key_id) if key_id else "not_set",
            "mode": mode,
            "issues": issues,
            "has_issues": len(issues) > 0
        }

    async def create_order(
        self,
        key_id: str,
        key_secret: str,
        amount_paise: int,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Create a gateway order.

        Args:
            key_id / key_secret: resolved credential pair, sent as HTTP basic auth
            amount_paise: Amount in paise (100 paise = 1 INR)
            receipt: our receipt id
            notes: purchase intent, echoed back by the gateway

        Returns:
            The gateway order (id, amount, currency, receipt, status)

        Raises:
            GatewayError on timeout, transport failure or a non-2xx answer
        """
        payload = {
            "amount": amount_paise,
            "currency": self.currency,
            "receipt": receipt,
            "notes": notes or {},
        }

        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.base_url}/orders",
                    json=payload,
                    headers=self.headers,
                    auth=(key_id, key_secret),
                )
                response.raise_for_status()
                data = response.json()

        except httpx.HTTPStatusError as e:
            logger.error(
                f"❌ Razorpay order creation failed ({e.response.status_code}) "
                f"for key {mask_key_id(key_id)}"
            )
            raise GatewayError()
        except httpx.TimeoutException:
            logger.error("❌ Razorpay order creation timed out")
            raise GatewayError()
        except httpx.HTTPError as e:
            logger.error(f"❌ Error reaching Razorpay: {type(e).__name__}")
            raise GatewayError()

        if not data.get("id"):
            logger.error("❌ Razorpay returned an order without an id")
            raise GatewayError()

        logger.info(f"✅ Razorpay order created: {data['id']} ({amount_paise} paise)")
        return data

    async def verify_credentials(self, key_id: str, key_secret: str) -> Dict[str, Any]:
        """
        Test a key pair by creating a 1 INR order with it.
        Orders that are never paid expire on the gateway side.
        """
        if not key_id or not key_secret:
            return {
                "status": False,
                "message": "Key ID and Key Secret are required"
            }
        if not key_id.startswith(KEY_ID_PREFIX):
            return {
                "status": False,
                "message": "Invalid Key ID format. It should start with rzp_"
            }

        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.base_url}/orders",
                    json={
                        "amount": TEST_ORDER_AMOUNT_PAISE,
                        "currency": self.currency,
                        "receipt": f"verify_{secrets.token_hex(6)}",
                    },
                    headers=self.headers,
                    auth=(key_id, key_secret),
                )

                if response.status_code in (200, 201):
                    return {
                        "status": True,
                        "message": "Razorpay credentials are valid"
                    }
                elif response.status_code == 401:
                    return {
                        "status": False,
                        "message": "Invalid API keys - authentication failed"
                    }
                else:
                    return {
                        "status": False,
                        "message": f"Razorpay rejected the test order (HTTP {response.status_code})"
                    }

        except httpx.TimeoutException:
            return {
                "status": False,
                "message": "Connection timeout - unable to reach Razorpay API"
            }
        except httpx.HTTPError as e:
            logger.error(f"❌ Error verifying Razorpay credentials: {type(e).__name__}")
            return {
                "status": False,
                "message": "Unable to reach Razorpay API"
            }

    def verify_payment_signature(
        self,
        order_id: str,
        payment_id: str,
        signature: str,
        key_secret: str,
    ) -> bool:
        """
        Check a checkout callback signature.

        Razorpay signs "<order_id>|<payment_id>" with HMAC-SHA256 using the key
        secret that created the order. Compared in constant time.
        """
        if not signature or not key_secret:
            return False

        expected = sign_payment(order_id, payment_id, key_secret)
        is_valid = hmac.compare_digest(expected.encode('utf-8'), signature.encode('utf-8'))

        if is_valid:
            logger.info(f"✅ Payment signature verified for order {order_id}")
        else:
            logger.warning(f"❌ Invalid payment signature for order {order_id}")

        return is_valid


def sign_payment(order_id: str, payment_id: str, key_secret: str) -> str:
    """Signature the gateway would send for an order/payment pair"""
    return hmac.new(
        key_secret.encode('utf-8'),
        f"{order_id}|{payment_id}".encode('utf-8'),
        hashlib.sha256
    ).hexdigest()


# Initialize service
razorpay_service = RazorpayService()
