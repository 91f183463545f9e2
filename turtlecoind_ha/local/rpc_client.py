import json
import asyncio
import logging
import requests
from typing import Dict, Any

from turtlecoind_ha.local.errors import HealthCheckFailure

log = logging.getLogger(__name__)


class NodeRpcClient:
    """
    Queries the daemon's JSON-over-HTTP interface.

    The blocking `requests` calls are executed in the event loop's default
    executor so several queries can be awaited concurrently.
    """

    def __init__(self, host: str, port: int, timeout: float) -> None:
        """
        :param host: Address the RPC server is reachable at.
        :param port: RPC port.
        :param timeout: Per-request timeout in seconds.
        """
        self.base_url = f"http://{host}:{port}"
        self.timeout = timeout

    def query(self, method: str) -> Dict[str, Any]:
        """
        Issues a GET request for a single RPC method and decodes the JSON body.

        :param method: The endpoint name, e.g. 'getinfo'.
        :return: The decoded JSON object.
        :raises HealthCheckFailure: If the request fails or the body is not a JSON object.
        """
        url = f"{self.base_url}/{method}"
        try:
            response = requests.get(url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except json.JSONDecodeError as e:
            raise HealthCheckFailure(f"Malformed response from /{method}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise HealthCheckFailure(f"Could not get /{method}: {e}") from e

        if not isinstance(data, dict):
            raise HealthCheckFailure(f"Unexpected response from /{method}: {data!r}")
        log.debug(f"/{method} -> {data}")
        return data

    async def query_async(self, method: str) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.query, method)

    async def get_info(self) -> Dict[str, Any]:
        return await self.query_async("getinfo")

    async def get_height(self) -> Dict[str, Any]:
        return await self.query_async("getheight")

    async def get_transactions(self) -> Dict[str, Any]:
        return await self.query_async("gettransactions")
