"""Tests for the n8n HTTP client and the MCP tool error envelope."""
import json

import httpx
import pytest

from n8n_deployer.core.client import N8NClient, N8NClientError, safe_tool


def client_for(settings, handler):
    return N8NClient(settings, transport=httpx.MockTransport(handler))


class TestRequests:
    @pytest.mark.asyncio
    async def test_sends_key_and_json(self, settings):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"id": "wf1"})

        client = client_for(settings, handler)
        try:
            data = await client.create_workflow({"name": "Order Intake", "nodes": [], "connections": {}})
        finally:
            await client.close()

        assert data == {"id": "wf1"}
        request = seen[0]
        assert str(request.url) == "http://n8n.test/api/v1/workflows"
        assert request.headers["X-N8N-API-KEY"] == "test-key"
        assert json.loads(request.content)["name"] == "Order Intake"

    @pytest.mark.asyncio
    async def test_empty_body(self, settings):
        client = client_for(settings, lambda request: httpx.Response(204))
        try:
            assert await client.delete_workflow("wf1") == {}
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_create_without_id(self, settings):
        client = client_for(settings, lambda request: httpx.Response(200, json={"name": "x"}))
        try:
            with pytest.raises(N8NClientError) as exc:
                await client.create_workflow({"name": "x"})
        finally:
            await client.close()
        assert exc.value.status_code == 502


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_http_status(self, settings):
        client = client_for(settings, lambda request: httpx.Response(401, json={"message": "unauthorized"}))
        try:
            with pytest.raises(N8NClientError) as exc:
                await client.activate_workflow("wf1")
        finally:
            await client.close()
        assert exc.value.status_code == 401
        assert exc.value.message.startswith("n8n API Error:")
        assert "unauthorized" in exc.value.message

    @pytest.mark.asyncio
    async def test_non_json_error_body(self, settings):
        client = client_for(settings, lambda request: httpx.Response(500, text="<html>boom</html>"))
        try:
            with pytest.raises(N8NClientError) as exc:
                await client.get("/workflows")
        finally:
            await client.close()
        assert exc.value.status_code == 500
        assert "boom" in exc.value.message

    @pytest.mark.asyncio
    async def test_timeout(self, settings):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        client = client_for(settings, handler)
        try:
            with pytest.raises(N8NClientError) as exc:
                await client.get("/workflows")
        finally:
            await client.close()
        assert exc.value.status_code == 504

    @pytest.mark.asyncio
    async def test_connection_failure(self, settings):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = client_for(settings, handler)
        try:
            with pytest.raises(N8NClientError) as exc:
                await client.get("/workflows")
        finally:
            await client.close()
        assert exc.value.status_code == 503
        assert exc.value.to_dict()["status"] == "error"


class TestHealthz:
    @pytest.mark.asyncio
    async def test_reports_engine_health(self, engine, fake_n8n):
        assert await engine.healthz() is True
        fake_n8n.healthy = False
        assert await engine.healthz() is False
        assert fake_n8n.calls[-1] == ("GET", "/healthz")

    @pytest.mark.asyncio
    async def test_unreachable(self, settings):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = client_for(settings, handler)
        try:
            assert await client.healthz() is False
        finally:
            await client.close()


class TestSafeTool:
    @pytest.mark.asyncio
    async def test_envelopes(self):
        @safe_tool
        async def engine_down():
            raise N8NClientError(503, "Network/Connection Failure")

        @safe_tool
        async def bad_input():
            raise ValueError("'workflow' must be a JSON object")

        @safe_tool
        async def crash():
            raise RuntimeError("boom")

        assert json.loads(await engine_down())["code"] == 503
        assert json.loads(await bad_input())["message"] == "Validation Error: 'workflow' must be a JSON object"
        crashed = json.loads(await crash())
        assert crashed["status"] == "fatal_error"
        assert crashed["code"] == 500
