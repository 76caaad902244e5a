"""Unit tests for processor API server wiring and lifecycle."""

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from discubot.api.server import (
    ProcessorAPIServer,
    build_orchestrator,
    load_flows,
    load_user_mappings,
    main,
    run_server,
)
from discubot.config import Settings
from discubot.processor.storage import InMemoryDiscussionStore, InMemoryFlowStore


def _settings(**overrides) -> Settings:
    values = {"anthropic_api_key": "sk-ant-test", "postgres_dsn": None}
    values.update(overrides)
    return Settings(_env_file=None, **values)


class TestProcessorAPIServerCreateApp:
    """Tests for ProcessorAPIServer.create_app wiring."""

    def test_create_app_registers_routes(self) -> None:
        orchestrator = MagicMock()
        app = ProcessorAPIServer(orchestrator, storage_backend="postgres").create_app()

        assert app["orchestrator"] is orchestrator
        assert app["storage_backend"] == "postgres"
        paths = {r.resource.canonical for r in app.router.routes()}
        assert {
            "/health",
            "/discussions/process",
            "/webhooks/{source_type}",
            "/configs/test-connection",
        } <= paths
        assert len(app.middlewares) == 2


class TestProcessorAPIServerLifecycle:
    """Tests for start/stop lifecycle methods."""

    @pytest.mark.asyncio
    async def test_start_creates_runner_and_site(self) -> None:
        runner = AsyncMock()
        site = AsyncMock()

        with (
            patch("discubot.api.server.web.AppRunner", return_value=runner) as mock_runner_cls,
            patch("discubot.api.server.web.TCPSite", return_value=site) as mock_site_cls,
        ):
            server = ProcessorAPIServer(MagicMock(), host="127.0.0.1", port=9000)
            await server.start()

        mock_runner_cls.assert_called_once()
        runner.setup.assert_awaited_once()
        mock_site_cls.assert_called_once_with(runner, "127.0.0.1", 9000)
        site.start.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stop_cleans_runner(self) -> None:
        runner = AsyncMock()
        server = ProcessorAPIServer(MagicMock())
        server._runner = runner

        await server.stop()

        runner.cleanup.assert_awaited_once()
        assert server._runner is None

    @pytest.mark.asyncio
    async def test_stop_is_noop_when_not_started(self) -> None:
        server = ProcessorAPIServer(MagicMock())
        await server.stop()
        assert server._runner is None


class TestRunServer:
    """Tests for run_server() lifecycle."""

    @pytest.mark.asyncio
    @patch("discubot.api.server.ProcessorAPIServer")
    async def test_run_server_starts_and_stops(self, mock_server_cls) -> None:
        orchestrator = MagicMock()
        mock_server = AsyncMock()
        mock_server_cls.return_value = mock_server

        with patch("discubot.api.server.asyncio.sleep", side_effect=asyncio.CancelledError):
            await run_server(orchestrator, "127.0.0.1", 9000, storage_backend="memory")

        mock_server_cls.assert_called_once_with(
            orchestrator, host="127.0.0.1", port=9000, storage_backend="memory"
        )
        mock_server.start.assert_awaited_once()
        mock_server.stop.assert_awaited_once()


class TestLoadFlows:
    """Tests for load_flows()."""

    def test_reads_flow_list(self, tmp_path, flow_factory) -> None:
        path = tmp_path / "flows.json"
        path.write_text(json.dumps([flow_factory().to_dict()]), encoding="utf-8")

        (flow,) = load_flows(str(path))

        assert flow.id == "flow-1"
        assert [o.id for o in flow.outputs] == ["A", "B"]
        assert flow.inputs[0].source_metadata == {"slackTeamId": "T1"}

    def test_rejects_non_list(self, tmp_path) -> None:
        path = tmp_path / "flows.json"
        path.write_text('{"id": "flow-1"}', encoding="utf-8")
        with pytest.raises(ValueError, match="JSON list"):
            load_flows(str(path))

    def test_rejects_flow_without_default_output(self, tmp_path, flow_factory, output_factory):
        flow = flow_factory([output_factory("A", domains=["frontend"])])
        path = tmp_path / "flows.json"
        path.write_text(json.dumps([flow.to_dict()]), encoding="utf-8")
        with pytest.raises(ValueError, match="flow-1.*default output"):
            load_flows(str(path))

    def test_reads_user_mappings(self, tmp_path) -> None:
        path = tmp_path / "users.json"
        path.write_text(
            json.dumps(
                [
                    {
                        "teamId": "T1",
                        "sourceType": "slack",
                        "sourceUserId": "U2",
                        "notionUserId": "0f6e3c1a-1234-4abc-9def-0123456789ab",
                    }
                ]
            ),
            encoding="utf-8",
        )
        (mapping,) = load_user_mappings(str(path))
        assert mapping.source_user_id == "U2"
        assert mapping.active is True


class TestBuildOrchestrator:
    """Tests for build_orchestrator() wiring."""

    @pytest.mark.asyncio
    async def test_requires_api_key(self) -> None:
        settings = _settings()
        settings.anthropic_api_key = None
        with pytest.raises(ValueError, match="ANTHROPIC_API_KEY"):
            await build_orchestrator(settings)

    @pytest.mark.asyncio
    async def test_memory_backends_with_seeded_flows(self, tmp_path, flow_factory) -> None:
        path = tmp_path / "flows.json"
        path.write_text(json.dumps([flow_factory().to_dict()]), encoding="utf-8")

        orchestrator, closers = await build_orchestrator(
            _settings(flows_file=str(path), retry_max_attempts=5)
        )

        assert isinstance(orchestrator.store, InMemoryDiscussionStore)
        assert orchestrator.adapters.source_types == ["figma", "notion", "slack"]
        assert orchestrator.outputs.output_types == ["notion"]
        assert orchestrator._retry_options.max_attempts == 5
        assert isinstance(orchestrator._flow_store, InMemoryFlowStore)
        assert await orchestrator._flow_store.get_flow("flow-1") is not None
        assert len(closers) == 2

    @pytest.mark.asyncio
    async def test_user_mappings_seeded(self, tmp_path) -> None:
        path = tmp_path / "users.json"
        path.write_text(
            json.dumps(
                [
                    {
                        "teamId": "T1",
                        "sourceType": "slack",
                        "sourceUserId": "U2",
                        "notionUserId": "notion-user-2",
                    }
                ]
            ),
            encoding="utf-8",
        )
        orchestrator, _ = await build_orchestrator(_settings(user_mappings_file=str(path)))
        resolver = orchestrator._user_resolver
        assert await resolver.resolve("T1", "slack", "<@U2>") == "notion-user-2"

    @pytest.mark.asyncio
    async def test_postgres_backends_share_pool(self) -> None:
        pool = MagicMock()
        with patch(
            "discubot.api.server.PostgresDiscussionStore.initialize", new_callable=AsyncMock
        ) as mock_init:
            with patch(
                "discubot.api.server.PostgresDiscussionStore.pool",
                new=property(lambda self: pool),
            ):
                orchestrator, closers = await build_orchestrator(
                    _settings(postgres_dsn="postgresql://localhost/discubot")
                )

        mock_init.assert_awaited_once()
        assert orchestrator._flow_store.pool is pool
        assert orchestrator._user_resolver._store.pool is pool
        assert closers[0] is orchestrator.store


class TestMain:
    """Tests for main() bootstrap behavior."""

    def test_main_exits_when_api_key_missing(self) -> None:
        with (
            patch("discubot.logging.setup_logging"),
            patch(
                "discubot.config.get_settings",
                return_value=SimpleNamespace(anthropic_api_key=None),
            ),
        ):
            with pytest.raises(SystemExit) as exc:
                main()
        assert exc.value.code == 1

    def test_main_handles_keyboard_interrupt(self) -> None:
        def _raise_keyboard_interrupt(coro):
            coro.close()
            raise KeyboardInterrupt

        with (
            patch("discubot.logging.setup_logging"),
            patch("discubot.config.get_settings", return_value=_settings()),
            patch(
                "discubot.api.server.asyncio.run",
                side_effect=_raise_keyboard_interrupt,
            ) as mock_run,
        ):
            main()
        mock_run.assert_called_once()

    def test_main_runs_server_and_closes_resources(self) -> None:
        orchestrator = MagicMock()
        closer = AsyncMock()

        with (
            patch("discubot.logging.setup_logging"),
            patch(
                "discubot.config.get_settings",
                return_value=_settings(api_host="127.0.0.1", api_port=9443),
            ),
            patch(
                "discubot.api.server.build_orchestrator",
                new_callable=AsyncMock,
                return_value=(orchestrator, [closer]),
            ),
            patch("discubot.api.server.run_server", new_callable=AsyncMock) as mock_run_server,
        ):
            main()

        mock_run_server.assert_awaited_once_with(
            orchestrator, "127.0.0.1", 9443, storage_backend="memory"
        )
        closer.close.assert_awaited_once()
