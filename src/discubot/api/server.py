"""Processor API server.

Runs the discussion pipeline behind a small aiohttp application. ``main``
reads settings once, builds storage, registries and the analysis engine,
and passes them into the orchestrator explicitly.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

from aiohttp import web

from discubot.adapters.registry import create_default_registry
from discubot.analysis.cache import InMemoryAnalysisCache
from discubot.analysis.claude import ClaudeAnalysisProvider
from discubot.analysis.engine import AnalysisEngine
from discubot.api.middleware import create_error_middleware, create_request_logging_middleware
from discubot.api.routes.configs import handle_test_connection
from discubot.api.routes.discussions import handle_process
from discubot.api.routes.health import handle_health
from discubot.api.routes.webhooks import handle_webhook
from discubot.config import Settings
from discubot.logging import get_logger
from discubot.outputs.base import OutputRegistry
from discubot.outputs.notion import NotionTaskCreator
from discubot.processor.models import Flow, UserMapping
from discubot.processor.notifier import Notifier
from discubot.processor.orchestrator import ProcessorOrchestrator
from discubot.processor.retry import RetryOptions
from discubot.processor.routing import validate_flow_outputs
from discubot.processor.storage import (
    InMemoryDiscussionStore,
    InMemoryFlowStore,
    InMemoryUserMappingStore,
    PostgresDiscussionStore,
    PostgresFlowStore,
    PostgresUserMappingStore,
)
from discubot.processor.user_mapping import UserResolver

log = get_logger("discubot.api.server")


class ProcessorAPIServer:
    """HTTP front end for the processor orchestrator."""

    def __init__(
        self,
        orchestrator: ProcessorOrchestrator,
        *,
        host: str = "0.0.0.0",  # nosec B104 - Intentional for Docker container
        port: int = 8080,
        storage_backend: str = "memory",
    ) -> None:
        self._orchestrator = orchestrator
        self._host = host
        self._port = port
        self._storage_backend = storage_backend
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

        log.info("processor_api_initialized", host=host, port=port, storage=storage_backend)

    def create_app(self) -> web.Application:
        """Create and configure the aiohttp application."""
        # Request logging is outermost so it records the 500s produced below it
        app = web.Application(
            middlewares=[create_request_logging_middleware(), create_error_middleware()]
        )

        app["orchestrator"] = self._orchestrator
        app["storage_backend"] = self._storage_backend

        app.router.add_get("/health", handle_health)
        app.router.add_post("/discussions/process", handle_process)
        app.router.add_post("/webhooks/{source_type}", handle_webhook)
        app.router.add_post("/configs/test-connection", handle_test_connection)

        self._app = app
        return app

    async def start(self) -> None:
        """Start the server."""
        if self._app is None:
            self.create_app()

        if self._app is None:  # pragma: no cover
            raise RuntimeError("create_app() must be called first")

        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()

        log.info("processor_api_started", host=self._host, port=self._port)

    async def stop(self) -> None:
        """Stop the server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            log.info("processor_api_stopped")


async def run_server(
    orchestrator: ProcessorOrchestrator,
    host: str = "0.0.0.0",  # nosec B104 - Intentional for Docker container
    port: int = 8080,
    storage_backend: str = "memory",
) -> None:
    """Run the processor API until cancelled."""
    server = ProcessorAPIServer(
        orchestrator, host=host, port=port, storage_backend=storage_backend
    )
    await server.start()

    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        pass
    finally:
        await server.stop()


def load_flows(path: str) -> list[Flow]:
    """Read a JSON list of flows (camelCase, as produced by ``Flow.to_dict``)."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a JSON list of flows")
    flows = [Flow.from_dict(item) for item in data]
    for flow in flows:
        try:
            warnings = validate_flow_outputs(flow.active_outputs)
        except ValueError as e:
            raise ValueError(f"Flow {flow.id} in {path}: {e}") from e
        for warning in warnings:
            log.warning("flow_config_warning", flow_id=flow.id, warning=warning)
    return flows


def load_user_mappings(path: str) -> list[UserMapping]:
    """Read a JSON list of user mappings (camelCase, as ``UserMapping.to_dict``)."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a JSON list of user mappings")
    return [UserMapping.from_dict(item) for item in data]


async def build_orchestrator(settings: Settings) -> tuple[ProcessorOrchestrator, list[Any]]:
    """Wire the pipeline from ``settings``.

    Returns:
        The orchestrator and the resources to close on shutdown.
    """
    if settings.anthropic_api_key is None:
        raise ValueError("ANTHROPIC_API_KEY is required")

    retry_options = RetryOptions(
        max_attempts=settings.retry_max_attempts,
        initial_delay=settings.retry_initial_delay,
        backoff_multiplier=settings.retry_backoff_multiplier,
        max_delay=settings.retry_max_delay,
    )

    store: InMemoryDiscussionStore | PostgresDiscussionStore
    flow_store: InMemoryFlowStore | PostgresFlowStore
    mapping_store: InMemoryUserMappingStore | PostgresUserMappingStore
    closers: list[Any] = []
    if settings.postgres_dsn:
        store = PostgresDiscussionStore(dsn=settings.postgres_dsn)
        await store.initialize()
        flow_store = PostgresFlowStore(pool=store.pool)
        mapping_store = PostgresUserMappingStore(pool=store.pool)
        closers.append(store)
    else:
        log.warning("postgres_dsn_not_set", storage="memory")
        store = InMemoryDiscussionStore()
        flow_store = InMemoryFlowStore()
        mapping_store = InMemoryUserMappingStore()

    if settings.flows_file:
        flows = load_flows(settings.flows_file)
        for flow in flows:
            await flow_store.save_flow(flow)
        log.info("flows_loaded", path=settings.flows_file, count=len(flows))

    if settings.user_mappings_file:
        mappings = load_user_mappings(settings.user_mappings_file)
        for mapping in mappings:
            await mapping_store.save_mapping(mapping)
        log.info("user_mappings_loaded", path=settings.user_mappings_file, count=len(mappings))

    provider = ClaudeAnalysisProvider(
        settings.anthropic_api_key.get_secret_value(),
        model=settings.claude_model,
        summary_max_tokens=settings.analysis_summary_max_tokens,
        task_max_tokens=settings.analysis_task_max_tokens,
        timeout=settings.analysis_timeout,
    )
    engine = AnalysisEngine(
        provider,
        InMemoryAnalysisCache(max_entries=settings.analysis_cache_max_entries),
        cache_ttl=settings.analysis_cache_ttl,
        default_max_tasks=settings.analysis_max_tasks,
    )

    adapters = create_default_registry(timeout=settings.http_timeout)
    outputs = OutputRegistry(
        [NotionTaskCreator(timeout=settings.http_timeout, retry_options=retry_options)]
    )
    closers.extend([adapters, outputs])

    orchestrator = ProcessorOrchestrator(
        store,
        flow_store,
        adapters,
        engine,
        outputs,
        Notifier(settings.reply_personality),
        retry_options=retry_options,
        user_resolver=UserResolver(mapping_store),
    )
    return orchestrator, closers


def main() -> None:
    """Main entry point for the processor API service."""
    from discubot.config import get_settings
    from discubot.logging import setup_logging

    setup_logging()
    settings = get_settings()

    if settings.anthropic_api_key is None:
        log.error("ANTHROPIC_API_KEY is required")
        raise SystemExit(1)

    async def init_and_run() -> None:
        orchestrator, closers = await build_orchestrator(settings)
        try:
            await run_server(
                orchestrator,
                settings.api_host,
                settings.api_port,
                storage_backend="postgres" if settings.postgres_dsn else "memory",
            )
        finally:
            for resource in closers:
                await resource.close()

    try:
        asyncio.run(init_and_run())
    except KeyboardInterrupt:
        log.info("processor_api_shutdown")


if __name__ == "__main__":
    main()
