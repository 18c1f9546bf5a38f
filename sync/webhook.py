"""Webhook receiver for provider push notifications."""
import base64
import binascii
import hmac
import json
import logging
from typing import Any, Dict, Mapping, Optional, Union

from canonical.errors import AuthenticationFailure, InvalidPayload, SyncError
from canonical.models import Classification, SyncMode
from config import FeatureFlags
from sources.adapters import SourceAdapter
from storage.canonical_store import CanonicalStore
from sync.reconciler import KeyedLock, Reconciler

logger = logging.getLogger(__name__)

SECRET_HEADERS = {
    'luma': 'x-luma-webhook-secret',
}

ACK = {'ok': True}


class WebhookReceiver:
    """
    Receive single-record pushes and reconcile them.

    Every call acknowledges the provider; failures are logged and dropped
    so the provider never retries into the same error.
    """

    def __init__(
        self,
        store: CanonicalStore,
        adapters: Dict[str, SourceAdapter],
        flags: Optional[FeatureFlags] = None,
        secrets: Optional[Dict[str, str]] = None,
        locks: Optional[KeyedLock] = None
    ):
        self.store = store
        self.adapters = adapters
        self.flags = flags or FeatureFlags()
        self.secrets = secrets or {}
        self.locks = locks if locks is not None else KeyedLock()

    def handle(
        self,
        provider: str,
        headers: Optional[Mapping[str, str]],
        body: Union[str, bytes, None],
        is_base64_encoded: bool = False
    ) -> Dict[str, bool]:
        """
        Process one webhook delivery.

        Args:
            provider: Provider name from the request path
            headers: Request headers (any case)
            body: Raw request body
            is_base64_encoded: Whether API Gateway base64-encoded the body

        Returns:
            {"ok": True}, whatever happened
        """
        try:
            self._process(provider, headers or {}, body, is_base64_encoded)
        except AuthenticationFailure as e:
            logger.warning(f"Rejected {provider} webhook: {e}", extra={'provider': provider})
        except InvalidPayload as e:
            logger.warning(f"Ignoring malformed {provider} webhook: {e}", extra={'provider': provider})
        except SyncError as e:
            logger.error(f"Failed to process {provider} webhook: {e}", extra={'provider': provider})
        except Exception as e:
            logger.error(
                f"Unexpected error processing {provider} webhook: {e}",
                exc_info=True,
                extra={'provider': provider, 'error_type': type(e).__name__}
            )
        return dict(ACK)

    def _process(
        self,
        provider: str,
        headers: Mapping[str, str],
        body: Union[str, bytes, None],
        is_base64_encoded: bool
    ) -> None:
        if not self.flags.sync_enabled:
            logger.info(f"Sync disabled, ignoring {provider} webhook")
            return

        adapter = self.adapters.get(provider)
        if adapter is None:
            logger.info(f"No adapter for webhook provider '{provider}', ignoring")
            return

        self._authenticate(provider, headers)
        payload = self._decode(body, is_base64_encoded)
        record = adapter.parse_push(payload)

        if record.candidate is None:
            logger.info(f"Ignoring {provider} webhook of type '{record.event_type}'")
            return

        mode = SyncMode.APPLY if self.flags.write_enabled else SyncMode.DRY_RUN
        outcome = Reconciler(self.store, self.locks).reconcile(record.candidate, mode)

        level = logging.ERROR if outcome.classification is Classification.ERROR else logging.INFO
        logger.log(
            level,
            f"Webhook {record.event_type} for {outcome.natural_key}: "
            f"{outcome.classification.value}" + (f" ({outcome.reason})" if outcome.reason else ''),
            extra={'provider': provider, 'event_type': record.event_type, 'mode': mode.value}
        )

    def _authenticate(self, provider: str, headers: Mapping[str, str]) -> None:
        secret = self.secrets.get(provider)
        if not secret:
            raise AuthenticationFailure(f"No webhook secret configured for '{provider}'")

        header_name = SECRET_HEADERS.get(provider, f'x-{provider}-webhook-secret')
        supplied = None
        for name, value in headers.items():
            if name.lower() == header_name:
                supplied = value
                break

        if supplied is None:
            raise AuthenticationFailure(f"Missing {header_name} header")
        if not hmac.compare_digest(str(supplied).encode('utf-8'), secret.encode('utf-8')):
            raise AuthenticationFailure("Webhook secret mismatch")

    def _decode(self, body: Union[str, bytes, None], is_base64_encoded: bool) -> Any:
        if body is None or body == '' or body == b'':
            raise InvalidPayload("Empty webhook body")

        if is_base64_encoded:
            try:
                body = base64.b64decode(body)
            except (binascii.Error, ValueError) as e:
                raise InvalidPayload(f"Body is not valid base64: {e}")

        if isinstance(body, bytes):
            try:
                body = body.decode('utf-8')
            except UnicodeDecodeError as e:
                raise InvalidPayload(f"Body is not UTF-8: {e}")

        try:
            return json.loads(body)
        except ValueError as e:
            raise InvalidPayload(f"Body is not valid JSON: {e}")
