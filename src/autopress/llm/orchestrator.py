from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

from ..config import GenerationConfig
from ..errors import ConfigurationError, DataError, ExhaustionError, PipelineError
from ..models import Operation, RotationStrategy
from ..services import campaign_service
from ..services.key_service import KeyStore
from ..utils import log_event
from .backends import BACKENDS, GenerationBackend, GenerationResult
from .limiter import ConcurrencyLimiter
from .rotation import KeyRotator, RotationState

_OPERATIONS = {member.value for member in Operation}


class GenerationOrchestrator:
    """Single call path for rewrite, translate and humanize requests."""

    def __init__(
        self,
        conn: Any,
        key_store: KeyStore,
        rotator: KeyRotator,
        limiter: ConcurrencyLimiter,
        config: GenerationConfig,
        *,
        backends: Mapping[str, Callable[[], GenerationBackend]] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.conn = conn
        self.key_store = key_store
        self.rotator = rotator
        self.limiter = limiter
        self.config = config
        self.backends = dict(backends if backends is not None else BACKENDS)
        self.logger = logger or logging.getLogger("autopress.generation")

    def execute(self, campaign_id: str, operation: str, args: dict[str, Any]) -> GenerationResult:
        backend_config = campaign_service.get_backend_config(self.conn, campaign_id)
        if backend_config is None:
            raise ConfigurationError(
                "no_configuration",
                f"campaign {campaign_id} has no generation backend configured",
            )
        operation = str(getattr(operation, "value", operation))
        if operation not in _OPERATIONS:
            raise ConfigurationError("unsupported_operation", f"unknown operation {operation}")
        factory = self.backends.get(backend_config.backend)
        if factory is None:
            raise ConfigurationError("unknown_backend", f"no adapter for backend {backend_config.backend}")
        adapter = factory()
        if not adapter.supports(operation):
            raise ConfigurationError(
                "unsupported_operation",
                f"backend {backend_config.backend} does not support {operation}",
            )
        content = str(args.get("content") or "")
        if not content.strip():
            raise ConfigurationError("missing_content", f"{operation} needs non-empty content")
        if operation == Operation.TRANSLATE.value:
            language = args.get("target_language") or backend_config.options.get("target_language")
            if not str(language or "").strip():
                raise DataError("missing_target_language", "translate needs target_language")

        state = RotationState.from_json(
            backend_config.rotation_state,
            backend_config.strategy,
            backend_config.primary_key_id,
        )
        model = (
            backend_config.model
            or backend_config.options.get("model")
            or self.config.default_models.get(backend_config.backend)
        )

        with self.limiter.slot():
            key = self._reserve_key(backend_config.backend, state)
            options = {
                key_name: value
                for key_name, value in backend_config.options.items()
                if key_name not in {"api_key", "model"}
            }
            options.update({k: v for k, v in args.items() if k != "content"})
            options["model"] = model
            options.setdefault("timeout_seconds", self.config.timeout_seconds)
            options.setdefault("max_retries", self.config.max_retries)
            options.setdefault("retry_backoff_seconds", self.config.retry_backoff_seconds)
            try:
                options["api_key"] = self.key_store.load_secret(key.id)
                result = getattr(adapter, operation)(content, options)
            except Exception as exc:
                self._record_failure(campaign_id, backend_config.backend, state, key.id, exc)
                raise

        self.key_store.record_tokens(key.id, result.tokens_used)
        campaign_service.save_rotation_state(self.conn, campaign_id, state.to_json())
        log_event(
            self.logger,
            logging.INFO,
            "generation_succeeded",
            campaign_id=campaign_id,
            operation=operation,
            backend=backend_config.backend,
            key_id=key.id,
            tokens=result.tokens_used,
        )
        metadata = dict(result.metadata)
        metadata.setdefault("key_id", key.id)
        return GenerationResult(
            content=result.content,
            metadata=metadata,
            tokens_used=result.tokens_used,
            model=result.model or model,
        )

    def rewrite(self, campaign_id: str, content: str, **options: Any) -> GenerationResult:
        return self.execute(campaign_id, Operation.REWRITE.value, {"content": content, **options})

    def translate(self, campaign_id: str, content: str, target_language: str, **options: Any) -> GenerationResult:
        return self.execute(
            campaign_id,
            Operation.TRANSLATE.value,
            {"content": content, "target_language": target_language, **options},
        )

    def humanize(self, campaign_id: str, content: str, **options: Any) -> GenerationResult:
        return self.execute(campaign_id, Operation.HUMANIZE.value, {"content": content, **options})

    def reset_rotation(self, campaign_id: str) -> None:
        backend_config = campaign_service.get_backend_config(self.conn, campaign_id)
        if backend_config is None:
            raise ConfigurationError("no_configuration", f"campaign {campaign_id} has no backend")
        state = RotationState.fresh(backend_config.strategy, backend_config.primary_key_id)
        campaign_service.save_rotation_state(self.conn, campaign_id, state.to_json())
        log_event(self.logger, logging.INFO, "rotation_reset", campaign_id=campaign_id)

    def _reserve_key(self, backend: str, state: RotationState):
        rejected: set[int] = set()
        while True:
            try:
                key = self.rotator.select(backend, state, exclude=rejected)
            except ExhaustionError as exc:
                if rejected and exc.code == "no_keys_available":
                    raise ExhaustionError("quota_exceeded", f"all {backend} keys reached their quota") from exc
                raise
            if self.key_store.reserve(key.id):
                return key
            # Quota ran out between select and reserve.
            rejected.add(key.id)

    def _record_failure(
        self,
        campaign_id: str,
        backend: str,
        state: RotationState,
        key_id: int,
        exc: Exception,
    ) -> None:
        error = exc.describe() if isinstance(exc, PipelineError) else f"{type(exc).__name__}: {exc}"
        self.key_store.record_error(key_id, error)
        if state.strategy == RotationStrategy.FAILOVER.value:
            self.rotator.mark_failed(state, key_id)
        campaign_service.save_rotation_state(self.conn, campaign_id, state.to_json())
        log_event(
            self.logger,
            logging.ERROR,
            "generation_failed",
            campaign_id=campaign_id,
            backend=backend,
            key_id=key_id,
            strategy=state.strategy,
            error=error,
        )
