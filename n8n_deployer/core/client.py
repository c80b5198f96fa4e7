"""
HTTP Client Layer - n8n Execution Engine
Async HTTP client with standardized error handling for the n8n REST API.
"""
import json
from functools import wraps
from typing import Any, Dict, Optional

import httpx

from n8n_deployer.core.config import Settings


class N8NClientError(Exception):
    """Custom exception for n8n API errors."""
    def __init__(self, status_code: int, message: str, context: str = ""):
        self.status_code = status_code
        self.message = message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "error",
            "code": self.status_code,
            "message": self.message,
            "context": self.context
        }


def _error_detail(response: httpx.Response) -> Any:
    """Decode an error body as JSON when possible, text otherwise."""
    try:
        return response.json()
    except ValueError:
        return response.text


class N8NClient:
    """
    HTTP client for the n8n API.
    Manages connection lifecycle, headers, and error handling.
    Constructed once by the application and passed to the services that need it.
    """

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._settings = settings
        self._headers = {
            "X-N8N-API-KEY": settings.n8n_api_key,
            "Content-Type": "application/json",
            "Accept": "application/json"
        }
        self._timeout = httpx.Timeout(settings.http_timeout)
        self._client = httpx.AsyncClient(
            base_url=settings.api_url,
            headers=self._headers,
            timeout=self._timeout,
            transport=transport
        )
        # /healthz lives outside the REST API prefix and needs no key
        self._probe = httpx.AsyncClient(
            base_url=settings.engine_root_url,
            timeout=httpx.Timeout(settings.health_probe_timeout),
            transport=transport
        )

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def close(self):
        """Close the HTTP client connections."""
        await self._client.aclose()
        await self._probe.aclose()

    async def request(
        self,
        method: str,
        endpoint: str,
        json_data: Optional[Dict] = None,
        params: Optional[Dict] = None
    ) -> Dict[str, Any]:
        """
        Execute an HTTP request with standardized error handling.
        """
        try:
            response = await self._client.request(
                method=method,
                url=endpoint.lstrip("/"),
                json=json_data,
                params=params
            )
            response.raise_for_status()
            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError:
                return {"raw": response.text}

        except httpx.HTTPStatusError as e:
            raise N8NClientError(
                status_code=e.response.status_code,
                message=f"n8n API Error: {_error_detail(e.response)}",
                context=str(e)
            )

        except httpx.TimeoutException as e:
            raise N8NClientError(
                status_code=504,
                message="n8n API request timed out",
                context=str(e)
            )

        except httpx.RequestError as e:
            raise N8NClientError(
                status_code=503,
                message="Network/Connection Failure",
                context=str(e)
            )

    # Convenience methods
    async def get(self, endpoint: str, params: Optional[Dict] = None) -> Dict[str, Any]:
        return await self.request("GET", endpoint, params=params)

    async def post(self, endpoint: str, json_data: Optional[Dict] = None) -> Dict[str, Any]:
        return await self.request("POST", endpoint, json_data=json_data)

    async def delete(self, endpoint: str) -> Dict[str, Any]:
        return await self.request("DELETE", endpoint)

    # Engine contract
    async def create_workflow(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = await self.post("/workflows", json_data=payload)
        if "id" not in data:
            raise N8NClientError(
                status_code=502,
                message="n8n API Error: create response carried no workflow id",
                context=json.dumps(data)[:200]
            )
        return data

    async def activate_workflow(self, workflow_id: str) -> Dict[str, Any]:
        return await self.post(f"/workflows/{workflow_id}/activate")

    async def delete_workflow(self, workflow_id: str) -> Dict[str, Any]:
        return await self.delete(f"/workflows/{workflow_id}")

    async def healthz(self) -> bool:
        """Probe engine reachability. Any failure, timeout included, is unhealthy."""
        try:
            response = await self._probe.get("/healthz")
        except httpx.HTTPError:
            return False
        return response.is_success


def safe_tool(func):
    """
    Decorator for MCP tools.
    Catches N8NClientError and returns JSON error response instead of crashing.
    """
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except N8NClientError as e:
            return json.dumps(e.to_dict(), indent=2)
        except ValueError as e:
            return json.dumps({
                "status": "error",
                "code": 400,
                "message": f"Validation Error: {str(e)}"
            }, indent=2)
        except Exception as e:
            return json.dumps({
                "status": "fatal_error",
                "code": 500,
                "message": f"Internal MCP Error: {str(e)}"
            }, indent=2)
    return wrapper
