from dataclasses import dataclass
from functools import lru_cache

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}


@dataclass(frozen=True)
class MpesaConfig:
    """
    Daraja credentials and endpoints. Built once per process and passed to
    the client and services; never mutated afterwards.
    """
    consumer_key: str
    consumer_secret: str
    shortcode: str
    passkey: str
    callback_url: str
    base_url: str
    environment: str = "sandbox"
    timeout: float = 30
    transaction_type: str = "CustomerPayBillOnline"
    callback_log_ttl: int = 3600

    @property
    def token_url(self):
        return f"{self.base_url}/oauth/v1/generate?grant_type=client_credentials"

    @property
    def stk_push_url(self):
        return f"{self.base_url}/mpesa/stkpush/v1/processrequest"


def build_mpesa_config(source=None):
    """
    Build an MpesaConfig from a settings-like object (defaults to Django settings).
    """
    source = source or settings
    environment = (getattr(source, "MPESA_ENV", "sandbox") or "sandbox").lower()
    if environment not in BASE_URLS:
        raise ImproperlyConfigured(
            f"MPESA_ENV must be 'sandbox' or 'production', got '{environment}'"
        )
    base_url = getattr(source, "MPESA_BASE_URL", "") or BASE_URLS[environment]

    return MpesaConfig(
        consumer_key=getattr(source, "MPESA_CONSUMER_KEY", ""),
        consumer_secret=getattr(source, "MPESA_CONSUMER_SECRET", ""),
        shortcode=str(getattr(source, "MPESA_SHORTCODE", "")),
        passkey=getattr(source, "MPESA_PASSKEY", ""),
        callback_url=getattr(source, "MPESA_CALLBACK_URL", ""),
        base_url=base_url.rstrip("/"),
        environment=environment,
        timeout=float(getattr(source, "MPESA_TIMEOUT", 30)),
        transaction_type=getattr(source, "MPESA_TRANSACTION_TYPE", "CustomerPayBillOnline"),
        callback_log_ttl=int(getattr(source, "MPESA_CALLBACK_LOG_TTL", 3600)),
    )


@lru_cache(maxsize=None)
def get_mpesa_config():
    return build_mpesa_config()
