"""
Receipt Validator - queues receipts, asks the configured validator about
them, and reconciles the answers into verified receipts.

Flow for one run():

    queue snapshot -> per receipt (concurrently):
        local verification (test platform)          -> reconcile
        no validator configured                     -> stop, no event
        adapter builds body (None = skip)           -> enrich
        cache hit on hash(body.transaction)         -> reconcile
        validator function / HTTP POST              -> shape check -> cache -> reconcile

Reconcile: adapter.handle_receipt_validation_response, then upsert the
VerifiedReceipt and fire "verified", or fire "unverified". Every failure
ends up as an error payload on the unverified channel.
"""

import asyncio
import hashlib
import inspect
import json
import platform as runtime_platform
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from structlog import get_logger

from iapledger.config import Settings, get_settings
from iapledger.exceptions import ValidatorTransportError
from iapledger.models.errors import ErrorCode
from iapledger.models.receipt import Receipt
from iapledger.models.transaction import Transaction
from iapledger.models.validation import (
    ErrorPayload,
    RequestAdditionalData,
    SuccessData,
    UnverifiedReceipt,
    ValidationPayload,
    ValidationRequestBody,
    VerifiedReceipt,
    bad_response_payload,
    parse_payload,
)
from iapledger.observability.logging import log_context
from iapledger.observability.metrics import metrics, track_validator_call
from iapledger.services.adapter import Adapters, LocallyVerifyingAdapter
from iapledger.services.events import Callbacks
from iapledger.services.transport import (
    HttpxTransport,
    ValidationTransport,
    ValidatorConfig,
    ValidatorTarget,
    as_target,
)

logger = get_logger(__name__)


class ValidatorController(Protocol):
    """What the Validator needs from its store session."""

    @property
    def validator(self) -> ValidatorConfig: ...

    @property
    def adapters(self) -> Adapters: ...

    @property
    def verified_callbacks(self) -> Callbacks[VerifiedReceipt]: ...

    @property
    def unverified_callbacks(self) -> Callbacks[UnverifiedReceipt]: ...

    def get_application_username(self) -> str | None: ...

    async def finish(self, receipt: VerifiedReceipt) -> None: ...


class ReceiptQueue:
    """Receipts waiting for validation. Set semantics by receipt identity, insertion ordered."""

    def __init__(self) -> None:
        self._receipts: dict[Receipt, None] = {}

    def __len__(self) -> int:
        return len(self._receipts)

    def __contains__(self, receipt: Receipt) -> bool:
        return receipt in self._receipts

    def add(self, receipt: Receipt) -> None:
        self._receipts.setdefault(receipt, None)

    def snapshot_and_clear(self) -> list[Receipt]:
        receipts = list(self._receipts)
        self._receipts = {}
        return receipts


@dataclass
class CacheEntry:
    payload: ValidationPayload
    expires: float


class ValidationCache:
    """
    Validator responses keyed by a hash of the request's ``transaction`` object.

    Lets a repeated validation within ``ttl`` seconds reuse the last answer.
    Process lifetime only.
    """

    def __init__(self, ttl: float = 120.0, clock: Callable[[], float] = time.time) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    @staticmethod
    def key_for(body: ValidationRequestBody) -> str:
        """Stable hash of the body's transaction object."""
        serialized = json.dumps(body.transaction.to_wire(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(serialized.encode()).hexdigest()

    def purge_expired(self) -> None:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expires < now]
        for key in expired:
            del self._entries[key]

    def get(self, key: str) -> ValidationPayload | None:
        self.purge_expired()
        entry = self._entries.get(key)
        return entry.payload if entry else None

    def put(self, key: str, payload: ValidationPayload) -> None:
        self._entries[key] = CacheEntry(payload=payload, expires=self._clock() + self.ttl)

    def clear(self) -> None:
        self._entries.clear()


def device_info(settings: Settings) -> dict[str, Any]:
    """Runtime metadata sent along with every validation request."""
    return {
        "plugin": f"{settings.service_name}/{settings.version}",
        "platform": runtime_platform.system().lower(),
        "runtime": f"python/{runtime_platform.python_version()}",
    }


class Validator:
    """
    Handles communication with the receipt validation service.

    Usage:
        validator = Validator(store)
        validator.add(receipt)     # queue, no network call
        await validator.run()      # validate everything queued so far
    """

    def __init__(
        self,
        controller: ValidatorController,
        transport: ValidationTransport | None = None,
        cache: ValidationCache | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._controller = controller
        self._settings = settings or get_settings()
        self.transport = transport or HttpxTransport(timeout=self._settings.validator_timeout)
        self.cache = cache or ValidationCache(ttl=self._settings.validation_cache_ttl)
        self._queue = ReceiptQueue()
        self.verified_receipts: list[VerifiedReceipt] = []

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    def add(self, receipt_or_transaction: Receipt | Transaction) -> None:
        """Queue the receipt owning the argument. Validation happens on the next run()."""
        if isinstance(receipt_or_transaction, Transaction):
            receipt = receipt_or_transaction.parent_receipt
        else:
            receipt = receipt_or_transaction
        logger.debug(
            "receipt_validation_scheduled",
            platform=receipt.platform,
            already_queued=receipt in self._queue,
        )
        self._queue.add(receipt)

    async def run(self) -> None:
        """Validate every queued receipt. Receipts added meanwhile wait for the next run."""
        receipts = self._queue.snapshot_and_clear()
        if not receipts:
            return

        logger.debug("validation_run_started", receipts=len(receipts))
        results = await asyncio.gather(
            *(self._run_on_receipt(receipt) for receipt in receipts),
            return_exceptions=True,
        )
        for receipt, result in zip(receipts, results):
            if isinstance(result, BaseException):
                logger.error(
                    "receipt_validation_failed",
                    platform=receipt.platform,
                    error=str(result),
                )

    def add_verified_receipt(self, receipt: Receipt, data: SuccessData) -> VerifiedReceipt:
        """Add or update the verified receipt for (platform, data.id)."""
        for verified in self.verified_receipts:
            if verified.platform == receipt.platform and verified.id == data.id:
                logger.debug("verified_receipt_updated", platform=receipt.platform, id=data.id)
                verified.set(receipt, data)
                return verified

        logger.debug("verified_receipt_registered", platform=receipt.platform, id=data.id)
        verified = VerifiedReceipt(receipt, data, self._controller)  # type: ignore[arg-type]
        self.verified_receipts.append(verified)
        return verified

    async def build_request_body(self, receipt: Receipt) -> ValidationRequestBody | None:
        """Let the adapter build the body, then add username, device and legacy pricing."""
        adapter = self._controller.adapters.find(receipt.platform)
        if adapter is None:
            return None
        body = adapter.receipt_validation_body(receipt)
        if inspect.isawaitable(body):
            body = await body
        if body is None:
            return None

        additional = (
            body.additional_data.model_dump(exclude_none=True) if body.additional_data else {}
        )
        username = self._controller.get_application_username()
        if username:
            additional["application_username"] = username
        else:
            additional.pop("application_username", None)
        body.additional_data = RequestAdditionalData(**additional)

        body.device = {**(body.device or {}), **device_info(self._settings)}

        # Legacy top-level pricing for validators predating offers
        if body.offers is not None and len(body.offers) == 1:
            phases = body.offers[0].pricing_phases
            if len(phases) == 1:
                body.currency = phases[0].currency
                body.price_micros = phases[0].price_micros
            elif len(phases) == 2:
                body.currency = phases[1].currency
                body.price_micros = phases[1].price_micros
                body.intro_price_micros = phases[0].price_micros

        return body

    async def _run_on_receipt(self, receipt: Receipt) -> None:
        with log_context(receipt_key=receipt.key, transactions=len(receipt.transactions)):
            await self._validate_receipt(receipt)

    async def _validate_receipt(self, receipt: Receipt) -> None:
        adapter = self._controller.adapters.find(receipt.platform)
        if adapter is None:
            logger.warning("no_adapter_for_receipt", platform=receipt.platform)
            return

        if isinstance(adapter, LocallyVerifyingAdapter):
            logger.debug("using_local_verification", platform=receipt.platform)
            metrics.record_dispatch(receipt.platform, "local")
            payload = await adapter.verify_receipt(receipt)
            await self._on_response(receipt, payload)
            return

        config = self._controller.validator
        if config is None:
            logger.debug("validator_not_configured", platform=receipt.platform)
            return

        body = await self.build_request_body(receipt)
        if body is None:
            logger.debug("receipt_validation_skipped", platform=receipt.platform)
            return

        payload = await self._validate(config, receipt, body)
        await self._on_response(receipt, payload)

    async def _validate(
        self,
        config: ValidatorConfig,
        receipt: Receipt,
        body: ValidationRequestBody,
    ) -> ValidationPayload:
        key = ValidationCache.key_for(body)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("validation_cache_hit", platform=receipt.platform, key=key[:16])
            metrics.record_dispatch(receipt.platform, "cache")
            return cached

        wire = body.to_wire()
        if isinstance(config, (str, ValidatorTarget)):
            try:
                target = as_target(config)
            except ValueError as exc:
                logger.warning(
                    "validator_target_invalid", platform=receipt.platform, error=str(exc)
                )
                return ErrorPayload(
                    ok=False, code=ErrorCode.COMMUNICATION, message=str(exc), data={}
                )
            metrics.record_dispatch(receipt.platform, "http")
            try:
                with track_validator_call("http"):
                    raw = await self.transport.post(target, wire)
            except ValidatorTransportError as exc:
                metrics.record_transport_error(exc.status)
                logger.warning(
                    "validator_request_failed",
                    platform=receipt.platform,
                    status=exc.status,
                    error=exc.message,
                )
                return ErrorPayload(
                    ok=False,
                    code=ErrorCode.COMMUNICATION,
                    message=f"Error {exc.status}: {exc.message}",
                    data={},
                )
        else:
            metrics.record_dispatch(receipt.platform, "function")
            try:
                with track_validator_call("function"):
                    raw = config(wire)  # type: ignore[operator]
                    if inspect.isawaitable(raw):
                        raw = await raw
            except Exception as exc:
                logger.warning(
                    "validator_function_failed",
                    platform=receipt.platform,
                    error=str(exc),
                    exc_info=True,
                )
                return ErrorPayload(
                    ok=False,
                    code=ErrorCode.VERIFICATION_FAILED,
                    message=f"Validator function failed: {exc}",
                    data={},
                )

        try:
            payload = parse_payload(raw)
        except ValueError as exc:
            logger.warning("validator_bad_response", platform=receipt.platform, error=str(exc))
            return bad_response_payload(raw)

        self.cache.put(key, payload)
        return payload

    async def _on_response(self, receipt: Receipt, payload: ValidationPayload) -> None:
        try:
            adapter = self._controller.adapters.find(receipt.platform)
            if adapter is not None:
                await adapter.handle_receipt_validation_response(receipt, payload)

            if payload.ok:
                verified = self.add_verified_receipt(receipt, payload.data)
                metrics.record_outcome(receipt.platform, verified=True)
                logger.info("receipt_verified", platform=receipt.platform, id=verified.id)
                self._controller.verified_callbacks.trigger(verified)
            else:
                metrics.record_outcome(receipt.platform, verified=False)
                logger.info(
                    "receipt_unverified",
                    platform=receipt.platform,
                    code=payload.code,
                    message=payload.message,
                )
                self._controller.unverified_callbacks.trigger(UnverifiedReceipt(receipt, payload))
        except Exception:
            logger.exception(
                "validation_response_handling_failed",
                platform=receipt.platform,
            )
