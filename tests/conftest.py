"""Shared pytest fixtures for rpc-fallback tests.

Provides the Echo service descriptor, a configuration that ignores the
environment, and an in-memory transport that records every exchange and
answers with scripted or echoed responses.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import pytest

from rpc_fallback.call import AbortController
from rpc_fallback.client import FallbackClient
from rpc_fallback.config import FallbackClientConfig
from rpc_fallback.proto import Root, Service, load_proto

ECHO_DESCRIPTOR: dict[str, Any] = {
    "nested": {
        "google": {
            "nested": {
                "showcase": {
                    "nested": {
                        "v1beta1": {
                            "options": {"java_package": "com.google.showcase.v1beta1"},
                            "nested": {
                                "Echo": {
                                    "methods": {
                                        "Echo": {
                                            "requestType": "EchoRequest",
                                            "responseType": "EchoResponse",
                                        },
                                        "Expand": {
                                            "requestType": "ExpandRequest",
                                            "responseType": "EchoResponse",
                                            "responseStream": True,
                                        },
                                        "Collect": {
                                            "requestType": "EchoRequest",
                                            "requestStream": True,
                                            "responseType": "EchoResponse",
                                        },
                                        "Chat": {
                                            "requestType": "EchoRequest",
                                            "requestStream": True,
                                            "responseType": "EchoResponse",
                                            "responseStream": True,
                                        },
                                        "PagedExpand": {
                                            "requestType": "PagedExpandRequest",
                                            "responseType": "PagedExpandResponse",
                                        },
                                        "Wait": {
                                            "requestType": "WaitRequest",
                                            "responseType": "WaitResponse",
                                        },
                                    }
                                },
                                "Severity": {
                                    "values": {
                                        "UNNECESSARY": 0,
                                        "NECESSARY": 1,
                                        "URGENT": 2,
                                        "CRITICAL": 3,
                                    }
                                },
                                "EchoRequest": {
                                    "oneofs": {"response": {"oneof": ["content", "error"]}},
                                    "fields": {
                                        "content": {"type": "string", "id": 1},
                                        "error": {"type": "google.rpc.Status", "id": 2},
                                        "severity": {"type": "Severity", "id": 3},
                                        "payload": {"type": "bytes", "id": 4},
                                        "sequence": {"type": "int64", "id": 5},
                                    },
                                },
                                "EchoResponse": {
                                    "fields": {
                                        "content": {"type": "string", "id": 1},
                                        "severity": {"type": "Severity", "id": 2},
                                        "payload": {"type": "bytes", "id": 3},
                                        "sequence": {"type": "int64", "id": 4},
                                    }
                                },
                                "ExpandRequest": {
                                    "fields": {
                                        "content": {"type": "string", "id": 1},
                                        "error": {"type": "google.rpc.Status", "id": 2},
                                    }
                                },
                                "PagedExpandRequest": {
                                    "fields": {
                                        "content": {"type": "string", "id": 1},
                                        "page_size": {"type": "int32", "id": 2},
                                        "page_token": {"type": "string", "id": 3},
                                    }
                                },
                                "PagedExpandResponse": {
                                    "fields": {
                                        "responses": {
                                            "rule": "repeated",
                                            "type": "EchoResponse",
                                            "id": 1,
                                        },
                                        "next_page_token": {"type": "string", "id": 2},
                                    }
                                },
                                "WaitRequest": {
                                    "oneofs": {
                                        "end": {"oneof": ["end_time", "ttl"]},
                                        "response": {"oneof": ["error", "success"]},
                                    },
                                    "fields": {
                                        "end_time": {"type": "google.protobuf.Timestamp", "id": 1},
                                        "ttl": {"type": "google.protobuf.Duration", "id": 4},
                                        "error": {"type": "google.rpc.Status", "id": 2},
                                        "success": {"type": "WaitResponse", "id": 3},
                                    },
                                },
                                "Blob": {
                                    "fields": {
                                        "data": {"type": "bytes", "id": 1},
                                        "chunks": {"rule": "repeated", "type": "bytes", "id": 2},
                                        "attachments": {"keyType": "string", "type": "bytes", "id": 3},
                                        "inner": {"type": "Blob", "id": 4},
                                        "wrapped": {"type": "google.protobuf.BytesValue", "id": 5},
                                    }
                                },
                                "WaitResponse": {
                                    "fields": {
                                        "content": {"type": "string", "id": 1},
                                        "labels": {
                                            "keyType": "string",
                                            "type": "string",
                                            "id": 2,
                                        },
                                    }
                                },
                            },
                        }
                    }
                }
            }
        }
    }
}


@dataclass
class FakeResponse:
    """Scripted transport response."""

    ok: bool
    body: bytes = b""
    status_code: int = 200

    async def read_body(self) -> bytes:
        return self.body


@dataclass
class RecordedRequest:
    url: str
    method: str
    headers: dict[str, str]
    body: bytes
    cancellation_signal: Any


@dataclass
class FakeTransport:
    """In-memory transport.

    ``handler(request)`` produces the response; it may be a coroutine
    function. Every exchange is appended to ``requests``.
    """

    handler: Callable[[RecordedRequest], Any] | None = None
    requests: list[RecordedRequest] = field(default_factory=list)

    async def __call__(
        self,
        url: str,
        *,
        method: str,
        headers: Mapping[str, str],
        body: bytes,
        cancellation_signal: Any = None,
    ) -> Any:
        request = RecordedRequest(url, method, dict(headers), body, cancellation_signal)
        self.requests.append(request)
        if self.handler is None:
            return FakeResponse(ok=True)
        result = self.handler(request)
        if hasattr(result, "__await__"):
            result = await result
        return result

    @staticmethod
    def make_response(ok: bool = True, body: bytes = b"", status_code: int = 200) -> FakeResponse:
        return FakeResponse(ok, body, status_code)

    def reply(self, ok: bool = True, body: bytes = b"", status_code: int = 200) -> None:
        """Answer every following request with the same response."""
        response = FakeResponse(ok, body, status_code)
        self.handler = lambda request: response


class RecordingAbortController(AbortController):
    """AbortController that counts ``abort()`` calls."""

    created: list[RecordingAbortController] = []

    def __init__(self) -> None:
        super().__init__()
        self.abort_calls = 0
        RecordingAbortController.created.append(self)

    def abort(self) -> None:
        self.abort_calls += 1
        super().abort()


class BearerAuth:
    """Duck-typed credential provider."""

    def get_request_headers(self) -> dict[str, str]:
        return {"Authorization": "Bearer SOME_TOKEN"}


@pytest.fixture
def echo_descriptor() -> dict[str, Any]:
    return ECHO_DESCRIPTOR


@pytest.fixture
def echo_root() -> Root:
    return load_proto(ECHO_DESCRIPTOR)


@pytest.fixture
def echo_service(echo_root: Root) -> Service:
    return echo_root.lookup_service("Echo")


@pytest.fixture
def config() -> FallbackClientConfig:
    """Config isolated from environment variables and .env files."""
    return FallbackClientConfig(_env_file=None, log_level="none")  # type: ignore[call-arg]


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def abort_controllers() -> list[RecordingAbortController]:
    RecordingAbortController.created = []
    return RecordingAbortController.created


@pytest.fixture
def client(
    config: FallbackClientConfig,
    fake_transport: FakeTransport,
    abort_controllers: list[RecordingAbortController],
) -> FallbackClient:
    return FallbackClient(
        auth=BearerAuth(),
        transport=fake_transport,
        config=config,
        abort_controller_factory=RecordingAbortController,
        protocol="http",
        port=1337,
    )


@pytest.fixture
def stub_options() -> dict[str, Any]:
    return {"servicePath": "foo.example.com", "port": 443}
