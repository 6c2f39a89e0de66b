"""
PayHero M-Pesa STK push adapter.

Only initiation is an outbound call; outcomes arrive later on the callback
endpoint. Nothing here retries: a failed initiation is recorded and the
student starts a new attempt.
"""
import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import requests

from coursepay import config
from coursepay.exceptions import GatewayError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class GatewayResponse:
    checkout_request_id: str
    external_reference: Optional[str] = None
    message: Optional[str] = None


def normalize_phone(phone: str) -> str:
    """Normalize a Kenyan mobile number to 254XXXXXXXXX."""
    if not phone or not phone.strip():
        raise ValidationError("Phone number cannot be empty")

    digits = re.sub(r"\D", "", phone)
    if digits.startswith("0"):
        digits = "254" + digits[1:]
    elif not digits.startswith("254"):
        raise ValidationError(f"Invalid Kenyan phone number: {phone}")

    if len(digits) != 12:
        raise ValidationError(f"Invalid phone number length: {phone}")
    return digits


def _whole_shillings(amount) -> int:
    amount = Decimal(str(amount))
    if amount <= 0:
        raise GatewayError("Payment amount must be greater than zero", f"amount={amount}")
    if amount != amount.to_integral_value():
        raise GatewayError("M-Pesa payments must be in whole shillings", f"amount={amount}")
    return int(amount)


def initiate_stk_push(phone: str, amount, reference: str) -> GatewayResponse:
    """Send an STK push prompt to `phone` for `amount`, tagged with `reference`."""
    logger.info("Initiating PayHero STK push: ref=%s amount=%s", reference, amount)

    payload = {
        "amount": _whole_shillings(amount),
        "phone_number": normalize_phone(phone),
        "channel_id": int(config.PAYHERO_CHANNEL_ID) if config.PAYHERO_CHANNEL_ID else None,
        "provider": "m-pesa",
        "external_reference": reference,
        "callback_url": config.PAYHERO_CALLBACK_URL,
    }

    if not config.PAYHERO_USERNAME or not config.PAYHERO_PASSWORD:
        raise GatewayError("Payment service not configured. Please contact support.",
                           "PayHero API credentials not configured")

    try:
        response = requests.post(
            config.PAYHERO_BASE_URL,
            json=payload,
            auth=(config.PAYHERO_USERNAME, config.PAYHERO_PASSWORD),
            timeout=config.PAYHERO_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        body = response.json()
    except requests.exceptions.Timeout:
        logger.error("PayHero timeout for ref=%s", reference)
        raise GatewayError("Payment service timeout. Please try again.", "PayHero request timed out")
    except requests.exceptions.ConnectionError as e:
        logger.error("PayHero connection error for ref=%s: %s", reference, e)
        raise GatewayError("Network error reaching the payment service. Please try again.", str(e))
    except requests.exceptions.HTTPError as e:
        status_code = e.response.status_code if e.response is not None else None
        detail = e.response.text if e.response is not None else str(e)
        logger.error("PayHero API error: status=%s body=%s", status_code, detail)
        if status_code == 401:
            raise GatewayError("Payment service authentication failed.", "Invalid PayHero credentials")
        raise GatewayError("Failed to send the M-Pesa prompt. Please try again.",
                           f"PayHero HTTP {status_code}: {detail}")
    except ValueError:
        raise GatewayError("Unexpected response from the payment service.", "PayHero returned non-JSON body")

    checkout_request_id = body.get("CheckoutRequestID") or body.get("checkout_request_id")
    if not checkout_request_id:
        logger.error("PayHero accepted no checkout request for ref=%s: %s", reference, body)
        raise GatewayError("Failed to send the M-Pesa prompt. Please try again.",
                           f"PayHero response without checkout id: {body}")

    logger.info("PayHero STK push accepted: ref=%s checkout=%s", reference, checkout_request_id)
    return GatewayResponse(
        checkout_request_id=checkout_request_id,
        external_reference=body.get("reference") or body.get("external_reference"),
        message=body.get("status") if isinstance(body.get("status"), str) else body.get("message"),
    )
