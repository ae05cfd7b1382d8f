"""Notification handler that forwards task events to an HTTP endpoint."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from urllib import error, parse, request

from blackroad_tasks.coordination.notifications import TaskEvent
from blackroad_tasks.errors import ValidationError

logger = logging.getLogger(__name__)


class WebhookHandler:
    """POST each event as JSON to `url`.

    Transport errors propagate so the notification bus can retry delivery.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_s: float = 5.0,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        parsed = parse.urlparse(url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValidationError(f"callback_url must be an http(s) URL, got {url!r}")
        self.url = url
        self.timeout_s = timeout_s
        self.headers = dict(headers or {})

    def __call__(self, event: TaskEvent) -> int:
        body = json.dumps(event.model_dump(mode="json")).encode("utf-8")
        req = request.Request(
            url=self.url,
            data=body,
            method="POST",
            headers={
                "Content-Type": "application/json",
                "X-Task-Event": event.event,
                **self.headers,
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                status = int(response.status)
        except error.HTTPError as exc:
            raise RuntimeError(f"Webhook {self.url} rejected {event.event}: HTTP {exc.code}") from exc
        except error.URLError as exc:
            raise RuntimeError(f"Webhook {self.url} unreachable: {exc.reason}") from exc
        logger.debug(
            "webhook event=delivered url=%s on=%s task_id=%s status=%s",
            self.url,
            event.event,
            event.task_id,
            status,
        )
        return status

    def __repr__(self) -> str:
        return f"WebhookHandler(url={self.url!r})"
