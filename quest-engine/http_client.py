"""Low-level HTTP request helpers for RPC node and reward relayer calls."""

from __future__ import annotations

import http.client
import itertools
import json
import urllib.error
import urllib.request

_rpc_ids = itertools.count(1)


def _decode_body(raw: str) -> dict[str, object]:
    decoded = json.loads(raw) if raw else {}
    if isinstance(decoded, dict):
        return decoded
    return {"data": decoded}


def _json_request(
    method: str,
    url: str,
    body: dict[str, object] | None = None,
    headers: dict[str, str] | None = None,
    timeout: float = 20,
) -> tuple[int, dict[str, object]]:
    payload = None
    request_headers: dict[str, str] = {"Content-Type": "application/json"}
    if headers:
        request_headers.update(headers)
    if body is not None:
        payload = json.dumps(body).encode("utf-8")
    request = urllib.request.Request(url=url, data=payload, headers=request_headers, method=method)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8", errors="replace")
            try:
                return response.status, _decode_body(raw)
            except json.JSONDecodeError:
                return 502, {"error": f"Invalid JSON from upstream: {raw[:200]}"}
    except urllib.error.HTTPError as exc:
        raw = exc.read().decode("utf-8", errors="replace")
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            decoded = {"error": raw}
        if isinstance(decoded, dict):
            return exc.code, {str(k): v for k, v in decoded.items()}
        return exc.code, {"error": decoded}
    except urllib.error.URLError as exc:
        return 503, {"error": f"Backend request failed: {exc}"}
    except TimeoutError as exc:
        return 504, {"error": f"Backend request timed out: {exc}"}
    except (ConnectionError, http.client.HTTPException) as exc:
        return 503, {"error": f"Backend connection failed: {exc}"}


def _rpc_request(
    url: str,
    rpc_method: str,
    params: dict[str, object] | list[object],
    timeout: float = 10,
) -> tuple[int, dict[str, object]]:
    """POST a JSON-RPC 2.0 call and return ``(http_status, envelope)``."""
    body: dict[str, object] = {
        "jsonrpc": "2.0",
        "id": next(_rpc_ids),
        "method": rpc_method,
        "params": params,
    }
    return _json_request("POST", url, body=body, timeout=timeout)
