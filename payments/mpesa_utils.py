import base64
import logging
from dataclasses import dataclass

import requests
from requests.auth import HTTPBasicAuth
from django.core.cache import cache
from django.utils import timezone

from .conf import get_mpesa_config
from .exceptions import AuthFailure, PushFailure

logger = logging.getLogger(__name__)

TOKEN_CACHE_KEY = 'mpesa_access_token'
# Daraja tokens live for 3600 seconds
TOKEN_CACHE_TIMEOUT = 3500


def generate_timestamp(now=None):
    """
    Current time as 'YYYYMMDDHHmmss' in the project's local time zone
    (Africa/Nairobi), which is what Daraja expects.
    """
    now = now or timezone.now()
    return timezone.localtime(now).strftime('%Y%m%d%H%M%S')


def generate_password(short_code, pass_key, timestamp):
    """
    Generate the M-Pesa password by concatenating ShortCode + PassKey + Timestamp,
    then base64-encoding the result.
    """
    data_to_encode = f"{short_code}{pass_key}{timestamp}"
    return base64.b64encode(data_to_encode.encode()).decode('utf-8')


@dataclass
class StkPushRequest:
    phone: str
    amount: object
    account_reference: str
    description: str

    def to_payload(self, config, timestamp):
        return {
            "BusinessShortCode": config.shortcode,
            "Password": generate_password(config.shortcode, config.passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": config.transaction_type,
            "Amount": int(self.amount),  # Daraja only accepts whole shillings
            "PartyA": self.phone,
            "PartyB": config.shortcode,
            "PhoneNumber": self.phone,
            "CallBackURL": config.callback_url,
            "AccountReference": self.account_reference,
            "TransactionDesc": self.description,
        }


def _response_body(response):
    try:
        return response.json()
    except ValueError:
        return response.text


class MpesaClient:
    """
    Thin adapter over the Daraja OAuth and STK Push endpoints.

    Every call is a single attempt bounded by ``config.timeout``; retrying is
    left to the caller.
    """

    def __init__(self, config=None):
        self.config = config or get_mpesa_config()

    def get_access_token(self, consumer_key=None, consumer_secret=None):
        """
        Fetch a bearer token with client credentials (HTTP Basic auth).

        Raises AuthFailure with the HTTP status and body when the endpoint
        is unreachable, answers non-2xx, or the body has no access_token.
        """
        consumer_key = consumer_key if consumer_key is not None else self.config.consumer_key
        consumer_secret = consumer_secret if consumer_secret is not None else self.config.consumer_secret

        logger.info("Requesting M-Pesa OAuth token", extra={'url': self.config.token_url})
        try:
            r = requests.get(
                self.config.token_url,
                auth=HTTPBasicAuth(consumer_key, consumer_secret),
                timeout=self.config.timeout,
            )
        except requests.RequestException as exc:
            logger.error("M-Pesa OAuth request failed", extra={'error': str(exc)})
            raise AuthFailure(f"OAuth request failed: {exc}") from exc

        body = _response_body(r)
        if not r.ok:
            logger.error(
                "Failed to get M-Pesa access token",
                extra={'status_code': r.status_code, 'response': body},
            )
            raise AuthFailure("Failed to generate M-Pesa access token", r.status_code, body)

        token = body.get('access_token') if isinstance(body, dict) else None
        if not token:
            logger.error(
                "M-Pesa OAuth response has no access_token",
                extra={'status_code': r.status_code, 'response': body},
            )
            raise AuthFailure("M-Pesa OAuth response has no access_token", r.status_code, body)

        logger.info("Received M-Pesa OAuth token", extra={'token': token[:10] + '...'})
        return token

    def initiate_push(self, token, push_request, timestamp=None):
        """
        POST an STK Push request. Returns the provider's JSON acknowledgement.

        Raises PushFailure carrying the raw provider response on transport
        errors, non-2xx answers, non-JSON bodies, or a non-zero ResponseCode.
        """
        timestamp = timestamp or generate_timestamp()
        payload = push_request.to_payload(self.config, timestamp)

        logger.info(
            "Sending STK Push request",
            extra={'payload': {**payload, 'Password': '***'}},
        )
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        try:
            r = requests.post(
                self.config.stk_push_url,
                json=payload,
                headers=headers,
                timeout=self.config.timeout,
            )
        except requests.RequestException as exc:
            logger.error("STK Push request failed", extra={'error': str(exc)})
            raise PushFailure(f"STK Push request failed: {exc}") from exc

        body = _response_body(r)
        if not r.ok:
            logger.error("STK Push failed", extra={'status_code': r.status_code, 'response': body})
            raise PushFailure("STK Push initiation failed", r.status_code, body)

        if not isinstance(body, dict):
            logger.error("STK Push returned a malformed body", extra={'response': body})
            raise PushFailure("STK Push returned a malformed response", r.status_code, body)

        response_code = body.get("ResponseCode")
        if response_code is not None and str(response_code) != "0":
            logger.error("STK Push was not accepted", extra={'response': body})
            raise PushFailure(
                body.get("ResponseDescription") or "STK Push was not accepted",
                r.status_code,
                body,
            )

        return body


def get_cached_access_token(client):
    """
    Returns a valid access token from Safaricom Daraja.
    Caches it to avoid re-generating unnecessarily; failures are not cached.
    """
    token = cache.get(TOKEN_CACHE_KEY)
    if token:
        return token

    token = client.get_access_token()
    cache.set(TOKEN_CACHE_KEY, token, timeout=TOKEN_CACHE_TIMEOUT)
    return token
