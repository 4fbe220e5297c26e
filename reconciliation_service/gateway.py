"""
Payment gateway adapter.

Wraps the Stripe client behind the two customer calls the resolver needs and
classifies failures: connection problems and rate limits become
TransientIOError (retried once), invalid requests become
GatewayValidationError (never retried).
"""
import logging
from typing import Optional
import requests
import stripe
from common.error_handling import ErrorCodes, GatewayValidationError, ServiceError, TransientIOError
from common.retry import GATEWAY_RETRY_CONFIG, RetryConfig, retry_call
from common.settings import Settings

logger = logging.getLogger(__name__)

class CustomerAlreadyExists(Exception):
    def __init__(self, email: str):
        self.email = email
        super().__init__(f"gateway customer already exists for {email}")

class StripeGateway:
    def __init__(self, settings: Settings, client: Optional[stripe.StripeClient] = None,
                 retry_config: RetryConfig = GATEWAY_RETRY_CONFIG):
        self.settings = settings
        self.retry_config = retry_config
        self._client = client

    @property
    def client(self) -> stripe.StripeClient:
        if self._client is None:
            http_client = stripe.RequestsClient(
                timeout=self.settings.stripe_timeout_seconds,
                session=requests.Session(),
            )
            # retries are owned by retry_call so the budget stays at one extra attempt
            self._client = stripe.StripeClient(
                self.settings.stripe_secret_key,
                http_client=http_client,
                max_network_retries=0,
            )
        return self._client

    def _call(self, operation: str, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            raise TransientIOError(f"stripe {operation} unavailable: {e}", e, code=ErrorCodes.GATEWAY_ERROR)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_already_exists":
                raise CustomerAlreadyExists(kwargs.get("params", {}).get("email", ""))
            raise GatewayValidationError(f"stripe rejected {operation}: {e.user_message or e}", e)
        except stripe.StripeError as e:
            raise ServiceError(ErrorCodes.GATEWAY_ERROR, f"stripe {operation} failed: {e}", e)

    def create_customer(self, email: str, idempotency_key: str, metadata: Optional[dict] = None) -> str:
        params = {"email": email, "metadata": metadata or {}}
        customer = retry_call(
            self._call, self.retry_config, "customer create",
            self.client.customers.create,
            params=params,
            options={"idempotency_key": idempotency_key},
        )
        logger.info("Created gateway customer", extra={"customer_id": customer.id})
        return customer.id

    def find_customer_by_email(self, email: str) -> Optional[str]:
        result = retry_call(
            self._call, self.retry_config, "customer lookup",
            self.client.customers.list,
            params={"email": email, "limit": 1},
        )
        if not result.data:
            return None
        return result.data[0].id
