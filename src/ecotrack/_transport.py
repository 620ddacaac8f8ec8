"""Remote store transport over the REST and event-stream interface."""

from __future__ import annotations

import copy
import json
import logging
from collections.abc import AsyncIterator, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import quote, urlencode

import aiohttp

from ecotrack._redact import redact_for_log, redact_url
from ecotrack.config import StoreProfile
from ecotrack.exceptions import EcotrackStoreError

_logger = logging.getLogger(__name__)

# The server sends a keep-alive roughly every 30 s.
_STREAM_READ_TIMEOUT_S = 90.0


class RemoteStore(Protocol):
    """Structural store interface used by the monitor and commands.

    Having a protocol here makes it easy to pass test doubles while keeping
    the production implementation (:class:`StoreTransport`) concrete.
    """

    async def read(self, path: str) -> Any: ...

    async def write(self, path: str, partial: Mapping[str, Any]) -> None: ...

    async def delete(self, path: str) -> None: ...

    def watch(self, path: str) -> AsyncIterator[Any]: ...


@dataclass(frozen=True)
class StreamEvent:
    """One server-sent event."""

    event: str
    data: Any


class StreamParser:
    """Incremental server-sent-event parser.

    Feed decoded lines one at a time; a blank line completes an event.
    """

    def __init__(self) -> None:
        self._event = "message"
        self._data: list[str] = []

    def feed(self, line: str) -> StreamEvent | None:
        line = line.rstrip("\r\n")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        return None

    def _dispatch(self) -> StreamEvent | None:
        if not self._data and self._event == "message":
            return None
        text = "\n".join(self._data)
        event = self._event
        self._event = "message"
        self._data = []
        try:
            data = json.loads(text) if text else None
        except json.JSONDecodeError:
            data = text
        return StreamEvent(event=event, data=data)


def parse_stream(lines: Iterable[str]) -> list[StreamEvent]:
    """Parse a complete block of event-stream lines."""
    parser = StreamParser()
    events: list[StreamEvent] = []
    for line in lines:
        event = parser.feed(line)
        if event is not None:
            events.append(event)
    return events


def _split_path(path: str) -> list[str]:
    return [part for part in path.strip("/").split("/") if part]


def apply_tree_event(tree: Any, path: str, data: Any, *, merge: bool) -> Any:
    """Apply a ``put`` (*merge* false) or ``patch`` (*merge* true) to a mirrored tree.

    Returns the updated tree; the input is not modified. ``None`` values
    delete the addressed node, and empty containers collapse to ``None``
    the way the store reports them.
    """
    parts = _split_path(path)
    root: Any = copy.deepcopy(tree) if isinstance(tree, dict) else tree

    if not parts:
        if merge:
            base = root if isinstance(root, dict) else {}
            for key, value in (data or {}).items():
                if value is None:
                    base.pop(key, None)
                else:
                    base[key] = copy.deepcopy(value)
            return base or None
        return copy.deepcopy(data)

    if not isinstance(root, dict):
        root = {}
    parents: list[dict[str, Any]] = [root]
    node = root
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
        parents.append(node)

    leaf = parts[-1]
    if merge:
        target = node.get(leaf)
        if not isinstance(target, dict):
            target = {}
        for key, value in (data or {}).items():
            if value is None:
                target.pop(key, None)
            else:
                target[key] = copy.deepcopy(value)
        if target:
            node[leaf] = target
        else:
            node.pop(leaf, None)
    elif data is None:
        node.pop(leaf, None)
    else:
        node[leaf] = copy.deepcopy(data)

    # Prune containers emptied by deletes.
    for depth in range(len(parents) - 1, 0, -1):
        if not parents[depth]:
            parents[depth - 1].pop(parts[depth - 1], None)
    return root or None


class StoreTransport:
    """Store client over the REST interface.

    Writes are merge updates (``PATCH``), reads are ``GET`` and the watch is
    a server-sent-event stream mirrored locally.
    """

    def __init__(self, profile: StoreProfile, http_session: aiohttp.ClientSession) -> None:
        if not profile.base_url:
            raise EcotrackStoreError("Store base_url is not configured")
        self._profile = profile
        self._http = http_session
        self._timeout = aiohttp.ClientTimeout(total=profile.request_timeout)

    def url_for(self, path: str) -> str:
        quoted = "/".join(quote(part, safe="") for part in _split_path(path))
        url = f"{self._profile.base_url.rstrip('/')}/{quoted}.json"
        if self._profile.auth_token:
            url = f"{url}?{urlencode({'auth': self._profile.auth_token})}"
        return url

    async def _request(self, method: str, path: str, body: Any = None) -> Any:
        url = self.url_for(path)
        _logger.debug("%s %s body=%s", method, redact_url(url), redact_for_log(body))
        try:
            async with self._http.request(
                method,
                url,
                data=json.dumps(body) if body is not None else None,
                headers={"content-type": "application/json"},
                timeout=self._timeout,
            ) as resp:
                text = await resp.text()
                if resp.status != 200:
                    raise EcotrackStoreError(
                        f"HTTP {resp.status} from {method} {path}: {text[:200]}",
                        status_code=resp.status,
                        path=path,
                    )
        except EcotrackStoreError:
            raise
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise EcotrackStoreError(f"{method} {path} failed: {exc}", path=path) from exc

        try:
            return json.loads(text) if text else None
        except json.JSONDecodeError as exc:
            raise EcotrackStoreError(f"Invalid JSON from {method} {path}: {text[:200]}", path=path) from exc

    async def read(self, path: str) -> Any:
        return await self._request("GET", path)

    async def write(self, path: str, partial: Mapping[str, Any]) -> None:
        await self._request("PATCH", path, dict(partial))

    async def delete(self, path: str) -> None:
        await self._request("DELETE", path)

    async def watch(self, path: str) -> AsyncIterator[Any]:
        """Yield the full mirrored subtree after every ``put`` / ``patch``.

        Runs until the server closes the stream or revokes access; both end
        in :class:`EcotrackStoreError` so the caller can reconnect.
        """
        url = self.url_for(path)
        timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=self._profile.request_timeout,
            sock_read=_STREAM_READ_TIMEOUT_S,
        )
        _logger.debug("WATCH %s", redact_url(url))
        tree: Any = None
        parser = StreamParser()
        try:
            async with self._http.get(url, headers={"accept": "text/event-stream"}, timeout=timeout) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise EcotrackStoreError(
                        f"HTTP {resp.status} from WATCH {path}: {text[:200]}",
                        status_code=resp.status,
                        path=path,
                    )
                async for raw_line in resp.content:
                    event = parser.feed(raw_line.decode("utf-8", errors="replace"))
                    if event is None:
                        continue
                    if event.event in ("put", "patch"):
                        if not isinstance(event.data, dict):
                            _logger.debug("Ignoring malformed %s event", event.event)
                            continue
                        tree = apply_tree_event(
                            tree,
                            str(event.data.get("path") or "/"),
                            event.data.get("data"),
                            merge=event.event == "patch",
                        )
                        yield tree
                    elif event.event in ("cancel", "auth_revoked"):
                        raise EcotrackStoreError(f"Watch of {path} ended by server: {event.event}", path=path)
        except EcotrackStoreError:
            raise
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise EcotrackStoreError(f"WATCH {path} failed: {exc}", path=path) from exc
        raise EcotrackStoreError(f"Watch of {path} closed by server", path=path)
