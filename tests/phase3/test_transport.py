"""Tests for HttpTransport retry and error mapping."""

import httpx
import pytest

from treesync.errors import TransportError
from treesync.models import BatchSubmission
from treesync.sync.transport import HttpTransport
from tests.fixtures import TREE_ID, node_added


def mock_transport(handler, max_retries=3):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")
    return HttpTransport("http://test", max_retries=max_retries, backoff=0, client=client)


class TestAgainstBackend:
    async def test_submit_then_fetch(self, transport):
        event = node_added("1", name="A")
        response = await transport.submit_batch(
            TREE_ID, BatchSubmission(last_known_server_version=0, events=[event])
        )
        assert response.accepted and response.new_version == 1

        events = await transport.fetch_events(TREE_ID, since=0)
        assert [e.event_id for e in events] == [event.event_id]
        assert events[0].origin == "remote"

    async def test_conflict_raises_transport_error(self, transport):
        event = node_added("1")
        await transport.submit_batch(TREE_ID, BatchSubmission(last_known_server_version=0, events=[event]))
        with pytest.raises(TransportError):
            await transport.submit_batch(
                TREE_ID, BatchSubmission(last_known_server_version=1, events=[event])
            )


class TestRetry:
    async def test_retries_server_errors_then_succeeds(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json=[])

        transport = mock_transport(handler)
        assert await transport.fetch_events(TREE_ID) == []
        assert len(calls) == 3
        assert calls[0].url.params["since"] == "0"

    async def test_connect_errors_exhaust_retries(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        transport = mock_transport(handler, max_retries=2)
        with pytest.raises(TransportError, match="giving up after 2 attempts"):
            await transport.fetch_events(TREE_ID)
        assert len(calls) == 2

    async def test_client_errors_are_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(404, text="no such tree")

        transport = mock_transport(handler)
        with pytest.raises(TransportError, match="404"):
            await transport.fetch_events(TREE_ID)
        assert len(calls) == 1

    async def test_close_leaves_borrowed_client_open(self):
        transport = mock_transport(lambda request: httpx.Response(200, json=[]))
        await transport.close()
        assert await transport.fetch_events(TREE_ID) == []
