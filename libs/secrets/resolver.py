"""
Secret reference resolution orchestrator.

SecretReferenceResolver walks a configuration tree, resolves every distinct
``${provider:name#version}`` reference through the shared ResolutionCache
and the configured providers, and returns a rewritten copy of the tree
together with per-path failures.

One pass:
    1. Collect templates (malformed tokens raise SecretReferenceSyntaxError).
       A tree with no references and no escapes is returned as-is.
    2. Deduplicate references; fresh cache hits need no I/O.
    3. Resolve the rest concurrently, one task per reference, bounded per
       provider by ``max_concurrency``. Provider SDK calls run in the
       resolver's own worker threads under the provider's request timeout.
    4. Transient failures are retried once after ``retry_delay_seconds``,
       then a stale cache entry is served if one exists. NotFound and
       PermissionDenied never fall back to stale values.
    5. References still pending at the pass deadline become Timeout failures.
    6. Scalars whose references all resolved are substituted; the rest
       become UnresolvedSecret markers. Sibling branches are unaffected.

Example:
    >>> resolver = SecretReferenceResolver(SecretsConfig.from_tree(raw))
    >>> resolved = await resolver.resolve_all(raw, timeout=30)
    >>> resolved.failures
    []
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import contextlib
import contextvars
import functools
import logging
import threading
import time
from collections.abc import Mapping
from typing import Any

from pydantic import SecretStr
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from config.settings import Settings
from libs.common.async_utils import BackgroundLoop
from libs.common.logging.context import ResolutionPassContext
from libs.secrets.cache import CacheState, ResolutionCache
from libs.secrets.config import ProviderConfig, SecretsConfig
from libs.secrets.exceptions import FailureKind, SecretManagerError, SecretUnavailableError
from libs.secrets.factory import ProviderRegistry
from libs.secrets.models import (
    ConfigPath,
    ResolutionDiagnostic,
    ResolutionFailure,
    ResolutionResult,
    ResolvedTree,
    SecretReference,
    UnresolvedSecret,
    format_path,
)
from libs.secrets.redaction import SecretRedactor
from libs.secrets.references import ScalarTemplate, collect_references

logger = logging.getLogger(__name__)

_ATTEMPTS = 2


class SecretReferenceResolver:
    """
    Resolves secret references in configuration trees.

    One instance is meant to live for the whole process: its cache, provider
    registry and redactor are shared by every pass.

    Args:
        config: The ``secrets`` configuration section
        registry: Provider registry (built from ``config`` when omitted)
        cache: Resolution cache (a fresh one when omitted)
        redactor: Value registry used for log scrubbing (a fresh one when omitted)
        settings: Process settings forwarded to the registry's backend factory
    """

    def __init__(
        self,
        config: SecretsConfig,
        registry: ProviderRegistry | None = None,
        cache: ResolutionCache | None = None,
        redactor: SecretRedactor | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._config = config
        self._registry = registry if registry is not None else ProviderRegistry(config, settings)
        self._cache = cache if cache is not None else ResolutionCache()
        self._redactor = redactor if redactor is not None else SecretRedactor()
        self._executor: concurrent.futures.ThreadPoolExecutor | None = None
        self._bridge: BackgroundLoop | None = None
        self._lifecycle_lock = threading.Lock()

    @property
    def cache(self) -> ResolutionCache:
        return self._cache

    @property
    def redactor(self) -> SecretRedactor:
        return self._redactor

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    async def resolve_all(self, tree: Any, timeout: float | None = None) -> ResolvedTree:
        """
        Resolve every reference in ``tree``.

        Args:
            tree: Nested mappings/sequences/scalars (not mutated)
            timeout: Overall deadline in seconds; defaults to
                ``resolve_timeout_seconds`` from the config (None = no deadline)

        Returns:
            ResolvedTree with the rewritten tree, failures, diagnostics and provenance

        Raises:
            SecretReferenceSyntaxError: Malformed reference tokens
        """
        templates = collect_references(tree)
        if not templates:
            return ResolvedTree(tree=tree)

        if timeout is None:
            timeout = self._config.resolve_timeout_seconds

        with ResolutionPassContext() as pass_id:
            started = time.monotonic()
            distinct = list(
                dict.fromkeys(ref for template in templates.values() for ref in template.references)
            )
            results: dict[SecretReference, ResolutionResult] = {}
            pending: list[SecretReference] = []
            for ref in distinct:
                lookup = self._cache.lookup(ref)
                if lookup.state is CacheState.FRESH:
                    results[ref] = ResolutionResult(reference=ref, value=lookup.value)
                else:
                    pending.append(ref)
            cache_hits = len(results)

            if pending:
                results.update(await self._resolve_pending(pending, timeout))

            resolved = self._rewrite(tree, templates, results)
            elapsed_ms = (time.monotonic() - started) * 1000
            logger.info(
                "Secret resolution pass complete",
                extra={
                    "pass_id": pass_id,
                    "references": len(distinct),
                    "cache_hits": cache_hits,
                    "fetched": len(pending),
                    "failures": len(resolved.failures),
                    "stale": len(resolved.diagnostics),
                    "elapsed_ms": round(elapsed_ms, 1),
                },
            )
            return resolved

    async def _resolve_pending(
        self, pending: list[SecretReference], timeout: float | None
    ) -> dict[SecretReference, ResolutionResult]:
        semaphores: dict[str, asyncio.Semaphore] = {}
        tasks = {
            asyncio.create_task(self._resolve_one(ref, semaphores)): ref for ref in pending
        }
        done, not_done = await asyncio.wait(tasks, timeout=timeout)

        results: dict[SecretReference, ResolutionResult] = {}
        for task in done:
            results[tasks[task]] = task.result()
        if not_done:
            for task in not_done:
                task.cancel()
            await asyncio.gather(*not_done, return_exceptions=True)
            for task in not_done:
                ref = tasks[task]
                logger.warning("Secret resolution deadline exceeded", extra=ref.log_context())
                results[ref] = ResolutionResult(
                    reference=ref,
                    kind=FailureKind.TIMEOUT,
                    detail=f"not resolved within {timeout}s",
                )
        return results

    def _semaphore(
        self, semaphores: dict[str, asyncio.Semaphore], provider: str
    ) -> contextlib.AbstractAsyncContextManager[Any]:
        if self._config.max_concurrency is None:
            return contextlib.nullcontext()
        semaphore = semaphores.get(provider)
        if semaphore is None:
            semaphore = semaphores[provider] = asyncio.Semaphore(self._config.max_concurrency)
        return semaphore

    async def _resolve_one(
        self, ref: SecretReference, semaphores: dict[str, asyncio.Semaphore]
    ) -> ResolutionResult:
        try:
            provider_config = self._registry.provider_config(ref.provider)
            value = await self._fetch_with_retry(ref, provider_config, semaphores)
        except SecretUnavailableError as e:
            lookup = self._cache.lookup(ref)
            if lookup.value is not None:
                logger.warning(
                    "Serving cached secret after provider failure",
                    extra={**ref.log_context(), "cache_state": lookup.state.value},
                )
                return ResolutionResult(
                    reference=ref,
                    value=lookup.value,
                    detail=self._redactor.scrub(str(e)),
                    stale=lookup.state is CacheState.STALE,
                )
            return self._failure(ref, e)
        except SecretManagerError as e:
            return self._failure(ref, e)
        return ResolutionResult(reference=ref, value=SecretStr(value))

    async def _fetch_with_retry(
        self,
        ref: SecretReference,
        provider_config: ProviderConfig,
        semaphores: dict[str, asyncio.Semaphore],
    ) -> str:
        async def fetch() -> str:
            async with self._semaphore(semaphores, ref.provider):
                return await self._call_provider(ref, provider_config.request_timeout_seconds)

        value = ""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(_ATTEMPTS),
            wait=wait_fixed(self._config.retry_delay_seconds),
            retry=retry_if_exception_type(SecretUnavailableError),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info("Retrying secret fetch", extra=ref.log_context())
                value = await self._cache.coalesce(ref, fetch, ttl=provider_config.ttl_seconds)
        return value

    async def _call_provider(self, ref: SecretReference, request_timeout: float) -> str:
        try:
            return await asyncio.wait_for(
                self._run_in_executor(self._get_from_provider, ref, request_timeout),
                timeout=request_timeout,
            )
        except TimeoutError as e:
            raise SecretUnavailableError(
                secret_name=ref.name,
                backend=ref.provider,
                reason=f"provider call exceeded {request_timeout}s",
            ) from e

    def _run_in_executor(self, func: Any, *args: Any) -> asyncio.Future[Any]:
        # Resolver-owned pool: loop teardown must not join late provider calls.
        with self._lifecycle_lock:
            if self._executor is None:
                self._executor = concurrent.futures.ThreadPoolExecutor(
                    thread_name_prefix="secret-provider"
                )
            executor = self._executor
        context = contextvars.copy_context()
        return asyncio.get_running_loop().run_in_executor(
            executor, functools.partial(context.run, func, *args)
        )

    def _get_from_provider(self, ref: SecretReference, request_timeout: float) -> str:
        manager = self._registry.get(ref.provider)
        try:
            return manager.get_secret(ref.name, version=ref.version, timeout=request_timeout)
        except SecretManagerError:
            raise
        except Exception as e:
            logger.error(
                "Secret provider raised an unexpected error",
                extra={**ref.log_context(), "error_type": type(e).__name__},
            )
            raise SecretUnavailableError(
                secret_name=ref.name,
                backend=ref.provider,
                reason=f"unexpected {type(e).__name__}",
            ) from e

    def _failure(self, ref: SecretReference, error: SecretManagerError) -> ResolutionResult:
        detail = self._redactor.scrub(str(error))
        logger.warning(
            "Secret reference unresolved",
            extra={**ref.log_context(), "kind": error.failure_kind.value, "detail": detail},
        )
        return ResolutionResult(reference=ref, kind=error.failure_kind, detail=detail)

    def _rewrite(
        self,
        tree: Any,
        templates: Mapping[ConfigPath, ScalarTemplate],
        results: Mapping[SecretReference, ResolutionResult],
    ) -> ResolvedTree:
        values = {
            ref: result.value.get_secret_value()
            for ref, result in results.items()
            if result.value is not None
        }
        self._redactor.register(values.values())

        failures: list[ResolutionFailure] = []
        provenance: dict[ConfigPath, str] = {}
        replacements: dict[ConfigPath, Any] = {}
        stale_paths: dict[SecretReference, list[str]] = {}

        for path, template in templates.items():
            rendered_path = format_path(path)
            missing = [ref for ref in dict.fromkeys(template.references) if ref not in values]
            if missing:
                path_failures = tuple(
                    ResolutionFailure(
                        path=rendered_path,
                        reference=ref,
                        kind=results[ref].kind or FailureKind.UNAVAILABLE,
                        detail=results[ref].detail,
                    )
                    for ref in missing
                )
                failures.extend(path_failures)
                replacements[path] = UnresolvedSecret(template=template.raw, failures=path_failures)
            else:
                replacements[path] = template.render(values)
            provenance[path] = template.raw
            for ref in template.references:
                if results[ref].stale:
                    stale_paths.setdefault(ref, []).append(rendered_path)

        diagnostics = [
            ResolutionDiagnostic(
                reference=ref,
                message="provider unavailable; served stale cached value",
                paths=tuple(dict.fromkeys(paths)),
            )
            for ref, paths in stale_paths.items()
        ]
        return ResolvedTree(
            tree=_replace(tree, (), replacements),
            failures=failures,
            diagnostics=diagnostics,
            provenance=provenance,
        )

    async def resolve_documents(
        self, documents: Mapping[str, Any], timeout: float | None = None
    ) -> dict[str, ResolvedTree]:
        """
        Resolve several documents (main config, auth profiles) in one pass.

        References shared between documents are fetched once. Failure paths
        carry the document name as their first segment (``main.db.password``);
        provenance is per document so redact() works on each result.
        """
        combined = await self.resolve_all(dict(documents), timeout=timeout)
        split: dict[str, ResolvedTree] = {}
        for name in documents:
            prefix = format_path((name,))
            split[name] = ResolvedTree(
                tree=combined.tree[name],
                failures=combined.failures_under(prefix),
                diagnostics=[
                    diagnostic
                    for diagnostic in combined.diagnostics
                    if any(
                        path == prefix or path.startswith((f"{prefix}.", f"{prefix}["))
                        for path in diagnostic.paths
                    )
                ],
                provenance={
                    path[1:]: raw for path, raw in combined.provenance.items() if path[0] == name
                },
            )
        return split

    def resolve_all_sync(self, tree: Any, timeout: float | None = None) -> ResolvedTree:
        """
        Blocking wrapper for synchronous configuration loaders.

        The pass runs on a long-lived background loop owned by the resolver,
        so the call returns at the deadline while late provider fetches keep
        running there and still populate the cache for the next pass.
        """
        with self._lifecycle_lock:
            if self._bridge is None or self._bridge.closed:
                self._bridge = BackgroundLoop(name="secret-resolver")
            bridge = self._bridge
        return bridge.run(self.resolve_all(tree, timeout=timeout))

    def clear_cache(self) -> None:
        """Drop every cached value (administrative; idempotent)."""
        self._cache.clear()

    def test_provider(self, provider_id: str | None = None) -> tuple[bool, str | None]:
        """
        Check connectivity for ``provider_id`` (default provider when None).

        Never raises: configuration and connectivity problems are reported
        as ``(False, reason)``.
        """
        provider_id = provider_id or self._config.default_provider
        if provider_id is None:
            return False, "no provider given and no default_provider configured"
        try:
            provider_config = self._registry.provider_config(provider_id)
            manager = self._registry.get(provider_id)
        except SecretManagerError as e:
            return False, self._redactor.scrub(str(e))
        try:
            ok, detail = manager.test_connection(timeout=provider_config.request_timeout_seconds)
        except Exception as e:
            logger.warning(
                "Provider connection test raised",
                extra={"provider": provider_id, "error_type": type(e).__name__},
            )
            return False, f"connection test failed ({type(e).__name__})"
        logger.info(
            "Provider connection test",
            extra={"provider": provider_id, "ok": ok},
        )
        return ok, self._redactor.scrub(detail) if detail else detail

    def close(self) -> None:
        """Stop background work and close every provider. Idempotent."""
        with self._lifecycle_lock:
            bridge, self._bridge = self._bridge, None
            executor, self._executor = self._executor, None
        if bridge is not None:
            bridge.close()
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)
        self._registry.close()


def _replace(node: Any, path: ConfigPath, replacements: Mapping[ConfigPath, Any]) -> Any:
    if path in replacements:
        return replacements[path]
    if isinstance(node, Mapping):
        return {key: _replace(value, (*path, key), replacements) for key, value in node.items()}
    if isinstance(node, list):
        return [_replace(value, (*path, index), replacements) for index, value in enumerate(node)]
    if isinstance(node, tuple):
        return tuple(_replace(value, (*path, index), replacements) for index, value in enumerate(node))
    return node
