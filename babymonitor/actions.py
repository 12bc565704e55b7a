#!/usr/bin/env python3
"""Outbound webhook actions fired when the level trigger goes off."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Sequence
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

USER_AGENT = "Babymonitor/1.0"

log = logging.getLogger("actions")


@dataclass(frozen=True)
class ActionSpec:
    method: str
    url: str
    payload: str = ""

    @classmethod
    def from_cfg(cls, entry: Any) -> "ActionSpec":
        if not isinstance(entry, dict):
            raise ValueError(f"action entries must be mappings, got {entry!r}")
        url = str(entry.get("url") or "").strip()
        if not url:
            raise ValueError("action entry is missing a url")
        method = (str(entry.get("type") or "GET").strip() or "GET").upper()
        payload = entry.get("payload")
        return cls(method=method, url=url, payload="" if payload is None else str(payload))


def load_actions(raw: Any) -> tuple[ActionSpec, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, (list, tuple)):
        raise ValueError("actions must be a list")
    return tuple(ActionSpec.from_cfg(entry) for entry in raw)


class ActionDispatcher:
    """Fire every configured action concurrently, one thread per request.

    Delivery is best effort: failures are logged and never retried, and they
    do not influence sibling actions or the caller.
    """

    def __init__(
        self,
        actions: Sequence[ActionSpec],
        *,
        timeout: float = 10.0,
        run_async: bool = True,
    ) -> None:
        self.actions = tuple(actions)
        self.timeout = float(timeout)
        self._run_async = run_async

    def fire(self, level: float | None = None) -> list[threading.Thread]:
        if level is not None:
            log.info("Level triggered with %.4f; calling %d action(s)", level, len(self.actions))
        threads: list[threading.Thread] = []
        for action in self.actions:
            if not self._run_async:
                self.call_action(action)
                continue
            t = threading.Thread(
                target=self.call_action,
                args=(action,),
                name="action-dispatch",
                daemon=True,
            )
            t.start()
            threads.append(t)
        return threads

    def call_action(self, action: ActionSpec) -> bytes | None:
        """Issue a single request; returns the body on success, else None."""
        data = action.payload.encode("utf-8") if action.payload else None
        request = Request(
            action.url,
            data=data,
            method=action.method,
            headers={"User-Agent": USER_AGENT},
        )
        log.info("Call action: %s %s", action.method, action.url)
        try:
            with urlopen(request, timeout=self.timeout) as response:
                log.info("Response status for %s: %s", action.url, response.status)
                return response.read()
        except HTTPError as exc:
            log.warning("Action %s returned HTTP %s", action.url, exc.code)
            exc.close()
        except (URLError, OSError) as exc:
            log.warning("Failed to call request to %s: %s", action.url, exc)
        return None
