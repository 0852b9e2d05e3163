from __future__ import annotations

import json
import logging
import random
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

import jsonschema

from ..errors import ConfigurationError, ExhaustionError
from ..models import KeyStatus, ProviderKey, RotationStrategy
from ..services.key_service import KeyStore
from ..utils import log_event

ROTATION_STATE_VERSION = 1

ROTATION_STATE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["version", "strategy", "current_index", "failed_key_ids"],
    "additionalProperties": False,
    "properties": {
        "version": {"const": ROTATION_STATE_VERSION},
        "strategy": {"enum": [member.value for member in RotationStrategy]},
        "current_index": {"type": "integer", "minimum": 0},
        "primary_key_id": {"type": ["integer", "null"]},
        "failed_key_ids": {"type": "array", "items": {"type": "integer"}, "uniqueItems": True},
        "last_used_key_id": {"type": ["integer", "null"]},
    },
}


@dataclass
class RotationState:
    strategy: str
    current_index: int = 0
    primary_key_id: int | None = None
    failed_key_ids: list[int] = field(default_factory=list)
    last_used_key_id: int | None = None
    version: int = ROTATION_STATE_VERSION

    @classmethod
    def fresh(cls, strategy: str, primary_key_id: int | None = None) -> "RotationState":
        return cls(strategy=strategy, primary_key_id=primary_key_id)

    @classmethod
    def from_json(
        cls, blob: str | None, strategy: str, primary_key_id: int | None = None
    ) -> "RotationState":
        if not blob:
            return cls.fresh(strategy, primary_key_id)
        try:
            data = json.loads(blob)
        except json.JSONDecodeError as exc:
            raise ConfigurationError("invalid_rotation_state", "rotation state is not JSON") from exc
        try:
            jsonschema.validate(data, ROTATION_STATE_SCHEMA)
        except jsonschema.ValidationError as exc:
            raise ConfigurationError(
                "invalid_rotation_state",
                f"rotation state rejected: {exc.message}",
            ) from exc
        if data["strategy"] != strategy:
            # Strategy changed since the state was written; start over.
            return cls.fresh(strategy, primary_key_id)
        state = cls(**data)
        if primary_key_id is not None:
            state.primary_key_id = primary_key_id
        return state

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    def mark_failed(self, key_id: int) -> None:
        if key_id not in self.failed_key_ids:
            self.failed_key_ids.append(key_id)

    def clear_failures(self) -> None:
        self.failed_key_ids = []


Selector = Callable[["KeyRotator", list[ProviderKey], RotationState], ProviderKey]


def _select_round_robin(rotator: "KeyRotator", keys: list[ProviderKey], state: RotationState) -> ProviderKey:
    index = state.current_index % len(keys)
    state.current_index = (index + 1) % len(keys)
    return keys[index]


def _select_random(rotator: "KeyRotator", keys: list[ProviderKey], state: RotationState) -> ProviderKey:
    return rotator.rng.choice(keys)


def _select_least_used(rotator: "KeyRotator", keys: list[ProviderKey], state: RotationState) -> ProviderKey:
    return min(keys, key=lambda key: key.requests_today)


def _select_failover(rotator: "KeyRotator", keys: list[ProviderKey], state: RotationState) -> ProviderKey:
    failed = set(state.failed_key_ids)
    primary_id = state.primary_key_id if state.primary_key_id is not None else keys[0].id
    if primary_id not in failed:
        for key in keys:
            if key.id == primary_id:
                return key
    for key in keys:
        if key.id not in failed:
            return key
    raise ExhaustionError("all_keys_failed", "every usable key is marked failed")


SELECTORS: dict[str, Selector] = {
    RotationStrategy.ROUND_ROBIN.value: _select_round_robin,
    RotationStrategy.RANDOM.value: _select_random,
    RotationStrategy.LEAST_USED.value: _select_least_used,
    RotationStrategy.FAILOVER.value: _select_failover,
}


class KeyRotator:
    def __init__(
        self,
        key_store: KeyStore,
        *,
        rng: random.Random | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.key_store = key_store
        self.rng = rng or random.Random()
        self.logger = logger or logging.getLogger("autopress.rotation")

    def select(
        self,
        provider: str,
        state: RotationState,
        *,
        exclude: set[int] | None = None,
    ) -> ProviderKey:
        """Pick the next key for ``provider`` and advance ``state`` in place."""
        selector = SELECTORS.get(state.strategy)
        if selector is None:
            raise ConfigurationError("invalid_strategy", f"unknown rotation strategy: {state.strategy}")
        keys = self.key_store.list_keys(provider)
        known_ids = {key.id for key in keys}
        state.failed_key_ids = [key_id for key_id in state.failed_key_ids if key_id in known_ids]
        active = [
            key
            for key in keys
            if key.status == KeyStatus.ACTIVE.value and key.id not in (exclude or set())
        ]
        if not active:
            raise ExhaustionError("no_keys_available", f"no active keys for {provider}")
        eligible = [key for key in active if self.key_store.is_eligible(key)]
        if not eligible:
            raise ExhaustionError("quota_exceeded", f"all {provider} keys reached their quota")
        key = selector(self, eligible, state)
        state.last_used_key_id = key.id
        log_event(
            self.logger,
            logging.DEBUG,
            "key_selected",
            provider=provider,
            strategy=state.strategy,
            key_id=key.id,
            eligible=len(eligible),
        )
        return key

    def mark_failed(self, state: RotationState, key_id: int) -> None:
        state.mark_failed(key_id)
        log_event(self.logger, logging.WARNING, "key_marked_failed", key_id=key_id, failed=len(state.failed_key_ids))

    def reset(self, state: RotationState) -> RotationState:
        return RotationState.fresh(state.strategy, state.primary_key_id)
