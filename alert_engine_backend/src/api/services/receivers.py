from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

import httpx

from src.api.errors import ConfigError, DeliveryError
from src.api.schemas.alerting import ReceiverConfig

logger = logging.getLogger(__name__)


class Receiver(Protocol):
    name: str
    send_resolved: bool

    def accepts(self, labels: Mapping[str, str]) -> bool:
        ...

    async def send(self, payload: Dict[str, Any]) -> None:
        """Deliver one notification group; raise DeliveryError on failure."""
        ...


class _BaseReceiver:
    def __init__(self, name: str, *, send_resolved: bool = True, match: Optional[Mapping[str, str]] = None):
        self.name = name
        self.send_resolved = send_resolved
        self.match: Dict[str, str] = dict(match or {})

    def accepts(self, labels: Mapping[str, str]) -> bool:
        return all(labels.get(k) == v for k, v in self.match.items())


class WebhookReceiver(_BaseReceiver):
    """POSTs the notification payload as JSON; any non-2xx answer is a DeliveryError."""

    def __init__(
        self,
        name: str,
        url: str,
        client: httpx.AsyncClient,
        *,
        headers: Optional[Mapping[str, str]] = None,
        timeout_sec: float = 10.0,
        send_resolved: bool = True,
        match: Optional[Mapping[str, str]] = None,
    ):
        super().__init__(name, send_resolved=send_resolved, match=match)
        self.url = url
        self._headers = dict(headers or {})
        self._timeout = timeout_sec
        self._client = client

    async def send(self, payload: Dict[str, Any]) -> None:
        try:
            res = await self._client.post(self.url, json=payload, headers=self._headers, timeout=self._timeout)
        except httpx.HTTPError as exc:
            raise DeliveryError(
                f"receiver {self.name} unreachable: {exc!r}", meta={"receiver": self.name, "url": self.url}
            ) from exc
        if res.status_code // 100 != 2:
            raise DeliveryError(
                f"receiver {self.name} answered HTTP {res.status_code}: {res.text[:200]}",
                meta={"receiver": self.name, "status_code": res.status_code},
            )


class LogReceiver(_BaseReceiver):
    """Writes notifications to the application log (default when nothing else is configured)."""

    async def send(self, payload: Dict[str, Any]) -> None:
        logger.info("Notification [%s] %s", self.name, json.dumps(payload, sort_keys=True))


# PUBLIC_INTERFACE
def build_receivers(
    configs: Sequence[ReceiverConfig], client: httpx.AsyncClient, *, timeout_sec: float = 10.0
) -> List[Receiver]:
    """Instantiate receivers from configuration; names must be unique. Webhooks share `client`."""
    out: List[Receiver] = []
    seen = set()
    for cfg in configs:
        if cfg.name in seen:
            raise ConfigError(f"duplicate receiver name {cfg.name!r}")
        seen.add(cfg.name)
        if cfg.type == "webhook":
            if not cfg.url:
                raise ConfigError(f"webhook receiver {cfg.name!r} needs a url")
            out.append(
                WebhookReceiver(
                    cfg.name,
                    cfg.url,
                    client,
                    headers=cfg.headers,
                    timeout_sec=timeout_sec,
                    send_resolved=cfg.send_resolved,
                    match=cfg.match,
                )
            )
        else:
            out.append(LogReceiver(cfg.name, send_resolved=cfg.send_resolved, match=cfg.match))
    return out
