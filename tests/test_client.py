"""Tests for rpc_fallback.client.FallbackClient.

Covers:
- Constructor options applied over the base config
- API key credentials built from config
- Transport built from the registry when none is injected
- create_stub option handling and credential warm-up
- Call records reach the client's logger
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import pytest

from rpc_fallback.auth import ApiKeyCredentials, StaticHeaderCredentials
from rpc_fallback.client import FallbackClient
from rpc_fallback.config import FallbackClientConfig
from rpc_fallback.exceptions import ConfigValidationError, CredentialError
from rpc_fallback.proto import Root, Service
from rpc_fallback.transport import HttpxTransport


class _WarmupAuth(StaticHeaderCredentials):
    def __init__(self) -> None:
        super().__init__({"Authorization": "Bearer warm"})
        self.prepared = 0

    async def prepare(self) -> None:
        self.prepared += 1


class _FailingWarmup(StaticHeaderCredentials):
    def __init__(self) -> None:
        super().__init__({})

    async def prepare(self) -> None:
        raise OSError("no metadata server")


class TestConstruction:
    def test_options_override_config(self, config: FallbackClientConfig, fake_transport: Any) -> None:
        client = FallbackClient(transport=fake_transport, config=config, protocol="http", port=1337)
        assert client.config.protocol == "http"
        assert client.config.port == 1337
        assert config.port == 443

    def test_api_key_credentials(self, fake_transport: Any) -> None:
        config = FallbackClientConfig(_env_file=None, api_key="secret")  # type: ignore[call-arg]
        client = FallbackClient(transport=fake_transport, config=config)
        assert isinstance(client.auth, ApiKeyCredentials)
        assert client.auth.get_request_headers() == {"x-goog-api-key": "secret"}

    def test_explicit_auth_wins_over_api_key(self, fake_transport: Any) -> None:
        config = FallbackClientConfig(_env_file=None, api_key="secret")  # type: ignore[call-arg]
        auth = StaticHeaderCredentials({"Authorization": "Bearer x"})
        assert FallbackClient(auth=auth, transport=fake_transport, config=config).auth is auth

    @pytest.mark.asyncio
    async def test_default_transport(self, config: FallbackClientConfig) -> None:
        async with FallbackClient(config=config) as client:
            assert isinstance(client.transport, HttpxTransport)

    def test_load_proto(self, client: FallbackClient, echo_descriptor: dict[str, Any]) -> None:
        root = client.load_proto(echo_descriptor)
        assert isinstance(root, Root)
        assert root.lookup_service("Echo").full_name == "google.showcase.v1beta1.Echo"


class TestCreateStub:
    @pytest.mark.asyncio
    async def test_stub_options_do_not_leak(self, client: FallbackClient, echo_service: Service) -> None:
        first = await client.create_stub(echo_service, {"servicePath": "a.example.com"})
        second = await client.create_stub(echo_service)
        assert first.endpoint == "http://a.example.com:1337"
        assert second.endpoint == "http://localhost:1337"

    @pytest.mark.asyncio
    async def test_extra_options_kept(self, client: FallbackClient, echo_service: Service) -> None:
        stub = await client.create_stub(echo_service, {"fallback": "rest"})
        assert stub.options.model_extra == {"fallback": "rest"}

    @pytest.mark.asyncio
    async def test_client_field_rejected(self, client: FallbackClient, echo_service: Service) -> None:
        with pytest.raises(ConfigValidationError):
            await client.create_stub(echo_service, {"fallback_path_prefix": "other"})

    @pytest.mark.asyncio
    async def test_credentials_prepared(
        self,
        config: FallbackClientConfig,
        fake_transport: Any,
        echo_service: Service,
    ) -> None:
        auth = _WarmupAuth()
        client = FallbackClient(auth=auth, transport=fake_transport, config=config)
        await client.create_stub(echo_service)
        assert auth.prepared == 1

    @pytest.mark.asyncio
    async def test_warmup_failure(
        self,
        config: FallbackClientConfig,
        fake_transport: Any,
        echo_service: Service,
    ) -> None:
        client = FallbackClient(auth=_FailingWarmup(), transport=fake_transport, config=config)
        with pytest.raises(CredentialError, match="no metadata server"):
            await client.create_stub(echo_service)


class TestCallLogging:
    @pytest.mark.asyncio
    async def test_records_collected(self, fake_transport: Any, echo_service: Service) -> None:
        config = FallbackClientConfig(  # type: ignore[call-arg]
            _env_file=None, log_level="none", diagnostic_mode=True
        )
        client = FallbackClient(transport=fake_transport, config=config)
        stub = await client.create_stub(echo_service)

        done = asyncio.Event()
        handle = stub.echo({"content": "hi"}, {}, {}, lambda error, response=None: done.set())
        await asyncio.wait_for(done.wait(), timeout=1.0)
        await asyncio.wait_for(handle.wait(), timeout=1.0)

        records = client.call_logger.get_diagnostic_data()
        assert len(records) == 1
        assert records[0].method == "google.showcase.v1beta1.Echo.Echo"
        assert records[0].outcome == "ok"
        assert records[0].status_code == "OK"
        assert records[0].url.endswith("/$rpc/google.showcase.v1beta1.Echo/Echo")

    @pytest.mark.asyncio
    async def test_cancelled_call_recorded(self, fake_transport: Any, echo_service: Service) -> None:
        config = FallbackClientConfig(  # type: ignore[call-arg]
            _env_file=None, log_level="none", diagnostic_mode=True
        )

        async def hang(request: Any) -> Any:
            await asyncio.sleep(10)
            raise AssertionError("exchange was not cancelled")

        fake_transport.handler = hang
        client = FallbackClient(transport=fake_transport, config=config)
        stub = await client.create_stub(echo_service)

        handle = stub.echo({"content": "hi"}, {}, {}, lambda error, response=None: None)
        await asyncio.sleep(0.01)
        handle.cancel()
        await asyncio.sleep(0.01)

        records = client.call_logger.get_diagnostic_data()
        assert [r.outcome for r in records] == ["cancelled"]
        assert records[0].status_code == "CANCELLED"

    @pytest.mark.asyncio
    async def test_raising_callback_still_recorded(
        self,
        fake_transport: Any,
        echo_service: Service,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        config = FallbackClientConfig(  # type: ignore[call-arg]
            _env_file=None, log_level="none", diagnostic_mode=True
        )
        client = FallbackClient(transport=fake_transport, config=config)
        stub = await client.create_stub(echo_service)

        def explode(error: Any, response: Any = None) -> None:
            raise RuntimeError("callback failed")

        with caplog.at_level(logging.ERROR, logger="rpc_fallback"):
            handle = stub.echo({"content": "hi"}, {}, {}, explode)
            await asyncio.wait_for(handle.wait(), timeout=1.0)
            await asyncio.sleep(0.01)

        records = client.call_logger.get_diagnostic_data()
        assert [r.outcome for r in records] == ["ok"]
        assert any("raised" in r.getMessage() for r in caplog.records)
