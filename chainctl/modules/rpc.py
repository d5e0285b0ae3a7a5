"""Client for the node RPC surface.

Nodes expose JSON-RPC 2.0 at ``http://<host>:<rpc_port>/rpc`` and a REST
server with Prometheus metrics at ``http://<host>:<rest_port>/metrics``. The
schema belongs to the node; this client only moves payloads.
"""

import itertools
import logging
from typing import Any, Dict, Optional

import requests

from .errors import RpcUnavailableError
from .models import NodeDescriptor

logger = logging.getLogger("chainctl.rpc")


class NodeRpcClient:
    """Interface for node RPC calls."""

    def get_status(self, node: NodeDescriptor) -> Dict[str, Any]:
        raise NotImplementedError

    def get_block(self, node: NodeDescriptor, height: Optional[int] = None) -> Dict[str, Any]:
        raise NotImplementedError

    def get_era_summary(self, node: NodeDescriptor, block_hash: Optional[str] = None) -> Dict[str, Any]:
        raise NotImplementedError

    def get_metrics(self, node: NodeDescriptor) -> str:
        raise NotImplementedError


class JsonRpcClient(NodeRpcClient):
    """NodeRpcClient over HTTP using a shared ``requests`` session."""

    def __init__(self, host: str = "127.0.0.1", timeout: float = 5.0,
                 session: Optional[requests.Session] = None):
        self.host = host
        self.timeout = timeout
        self.session = session or requests.Session()
        self._ids = itertools.count(1)

    def _rpc_url(self, node: NodeDescriptor) -> str:
        return f"http://{self.host}:{node.rpc_port}/rpc"

    def _call(self, node: NodeDescriptor, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method}
        if params:
            payload["params"] = params
        try:
            response = self.session.post(self._rpc_url(node), json=payload, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except (requests.ConnectionError, requests.Timeout) as e:
            raise RpcUnavailableError(node.node_id, f"{method}: {e.__class__.__name__}") from e
        except (requests.HTTPError, ValueError) as e:
            raise RpcUnavailableError(node.node_id, f"{method}: bad response: {e}") from e

        if body.get("error"):
            error = body["error"]
            raise RpcUnavailableError(
                node.node_id, f"{method}: error {error.get('code')}: {error.get('message')}"
            )
        return body.get("result") or {}

    def get_status(self, node: NodeDescriptor) -> Dict[str, Any]:
        return self._call(node, "info_get_status")

    def get_block(self, node: NodeDescriptor, height: Optional[int] = None) -> Dict[str, Any]:
        params = {"block_identifier": {"Height": height}} if height is not None else None
        return self._call(node, "chain_get_block", params)

    def get_era_summary(self, node: NodeDescriptor, block_hash: Optional[str] = None) -> Dict[str, Any]:
        params = {"block_identifier": {"Hash": block_hash}} if block_hash else None
        return self._call(node, "chain_get_era_info_by_switch_block", params)

    def get_metrics(self, node: NodeDescriptor) -> str:
        url = f"http://{self.host}:{node.rest_port}/metrics"
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except (requests.ConnectionError, requests.Timeout) as e:
            raise RpcUnavailableError(node.node_id, f"metrics: {e.__class__.__name__}") from e
        except requests.HTTPError as e:
            raise RpcUnavailableError(node.node_id, f"metrics: bad response: {e}") from e
        return response.text


def parse_metrics(text: str) -> Dict[str, float]:
    """Parse Prometheus text exposition into ``{metric: value}``.

    Labelled series keep their label set as part of the name.
    """
    metrics: Dict[str, float] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        if '}' in line:
            end = line.rindex('}') + 1
            name, fields = line[:end], line[end:].split()
        else:
            name, *fields = line.split()
        try:
            metrics[name] = float(fields[0])
        except (IndexError, ValueError):
            logger.debug(f"Skipping unparsable metrics line: {line}")
    return metrics
