"""Shared fixtures for secret resolution tests."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

import pytest

from libs.secrets.cache import ResolutionCache
from libs.secrets.config import ProviderConfig, SecretsConfig
from libs.secrets.exceptions import SecretNotFoundError
from libs.secrets.factory import ProviderRegistry
from libs.secrets.manager import SecretManager
from libs.secrets.models import LATEST_VERSION
from libs.secrets.redaction import SecretRedactor
from libs.secrets.resolver import SecretReferenceResolver


class FakeSecretManager(SecretManager):
    """
    In-memory SecretManager that records calls.

    ``values`` maps (name, version) to the value; ``errors`` maps
    (name, version) to an exception raised instead (a list of exceptions is
    consumed one per call, then falls back to ``values``); ``delay`` makes
    each get_secret() block for that many seconds in its worker thread.
    """

    backend_name = "fake"

    def __init__(self, values: dict[str, str] | None = None, delay: float = 0.0) -> None:
        self.values: dict[tuple[str, str], str] = {
            (name, LATEST_VERSION): value for name, value in (values or {}).items()
        }
        self.errors: dict[tuple[str, str], Exception | list[Exception]] = {}
        self.delay = delay
        self.calls: list[tuple[str, str]] = []
        self.connection_result: tuple[bool, str | None] = (True, None)
        self.closed = False
        self._lock = threading.Lock()

    def set_value(self, name: str, value: str, version: str = LATEST_VERSION) -> None:
        self.values[(name, version)] = value

    def fail(self, name: str, *errors: Exception, version: str = LATEST_VERSION) -> None:
        self.errors[(name, version)] = list(errors) if len(errors) > 1 else errors[0]

    def calls_for(self, name: str, version: str = LATEST_VERSION) -> int:
        return self.calls.count((name, version))

    def get_secret(self, name: str, version: str = LATEST_VERSION, timeout: float | None = None) -> str:
        key = (name, version)
        with self._lock:
            self.calls.append(key)
            error = self.errors.get(key)
            if isinstance(error, list):
                error = error.pop(0) if error else None
        if self.delay:
            time.sleep(self.delay)
        if error is not None:
            raise error
        try:
            return self.values[key]
        except KeyError:
            raise SecretNotFoundError(secret_name=name, backend="fake") from None

    def set_secret(self, name: str, value: str, timeout: float | None = None) -> None:
        self.set_value(name, value)

    def list_secrets(self, prefix: str | None = None, timeout: float | None = None) -> list[str]:
        return sorted(name for name, _ in self.values if prefix is None or name.startswith(prefix))

    def test_connection(self, timeout: float | None = None) -> tuple[bool, str | None]:
        return self.connection_result

    def close(self) -> None:
        self.closed = True


class FakeClock:
    """Manually advanced monotonic clock for cache TTL tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_config(
    *provider_ids: str,
    unconfigured: tuple[str, ...] = (),
    ttl_seconds: float = 3600,
    request_timeout_seconds: float = 5,
    max_concurrency: int | None = None,
) -> SecretsConfig:
    providers = {
        provider_id: ProviderConfig(
            backend="env",
            ttl_seconds=ttl_seconds,
            request_timeout_seconds=request_timeout_seconds,
        )
        for provider_id in provider_ids
    }
    # Configured ids whose backend has no implementation
    providers.update({provider_id: ProviderConfig(backend="nosuch") for provider_id in unconfigured})
    return SecretsConfig(
        default_provider=provider_ids[0] if provider_ids else None,
        providers=providers,
        max_concurrency=max_concurrency,
        retry_delay_seconds=0,
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def fake_provider() -> FakeSecretManager:
    return FakeSecretManager()


@pytest.fixture()
def build_resolver(clock: FakeClock) -> Callable[..., SecretReferenceResolver]:
    """
    Build a resolver whose providers are FakeSecretManager instances.

    Usage: ``build_resolver({"p": fake}, ttl_seconds=60)``
    """

    def _build(
        providers: dict[str, FakeSecretManager],
        *,
        unconfigured: tuple[str, ...] = (),
        cache: ResolutionCache | None = None,
        **config_kwargs: object,
    ) -> SecretReferenceResolver:
        config = make_config(*providers, unconfigured=unconfigured, **config_kwargs)  # type: ignore[arg-type]
        registry = ProviderRegistry(config)
        for provider_id, manager in providers.items():
            registry.register(provider_id, manager)
        return SecretReferenceResolver(
            config,
            registry=registry,
            cache=cache if cache is not None else ResolutionCache(clock=clock),
            redactor=SecretRedactor(),
        )

    return _build
