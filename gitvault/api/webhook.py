"""GitHub push-event webhook that refreshes the pushed repository."""

import hashlib
import hmac
import json
import logging
from typing import Any
from urllib.parse import parse_qs

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool

from gitvault.context import RequestContext
from gitvault.directory import RepositoryDirectory
from gitvault.exceptions import GitVaultError, UnknownRepositoryError

logger = logging.getLogger(__name__)

# Checked in this order against the configured remote URLs
URL_FIELDS = ("ssh_url", "clone_url", "git_url", "html_url", "url")


class WebhookError(Exception):
    """A webhook request that gets a non-200 answer."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code


def verify_signature(token: bytes, body: bytes, headers: Any) -> None:
    """Check the HMAC signature GitHub sends with every delivery.

    ``X-Hub-Signature-256`` is preferred over the legacy sha1 header.
    """
    for header, digest in (("x-hub-signature-256", hashlib.sha256), ("x-hub-signature", hashlib.sha1)):
        signature = headers.get(header)
        if not signature:
            continue
        algo, _, received = signature.partition("=")
        if algo != digest().name:
            raise WebhookError(403, f"unable to validate payload: unsupported signature {algo}")
        expected = hmac.new(token, body, digest).hexdigest()
        if not hmac.compare_digest(expected, received.strip().lower()):
            raise WebhookError(403, "unable to validate payload: signature mismatch")
        return
    raise WebhookError(403, "unable to validate payload: missing signature")


def parse_payload(body: bytes, content_type: str) -> dict[str, Any]:
    """Decode a JSON or form-encoded (``payload=...``) delivery body."""
    try:
        if content_type.startswith("application/x-www-form-urlencoded"):
            form = parse_qs(body.decode("utf-8"))
            body = form.get("payload", [""])[0].encode("utf-8")
        payload = json.loads(body)
    except (UnicodeDecodeError, ValueError) as e:
        raise WebhookError(400, f"unable to unpack push event body: {e}")
    if not isinstance(payload, dict):
        raise WebhookError(400, "unable to unpack push event body: not an object")
    return payload


def candidate_urls(payload: dict[str, Any]) -> list[str]:
    repository = payload.get("repository")
    if not isinstance(repository, dict):
        raise WebhookError(400, "no repository metadata set")
    return [repository[f] for f in URL_FIELDS if isinstance(repository.get(f), str) and repository[f]]


class PushEventHandler:
    """Validates GitHub deliveries and refreshes the matching checkout."""

    def __init__(
        self,
        directory: RepositoryDirectory,
        token: str | bytes,
        request_timeout: float | None = 60.0,
    ) -> None:
        self.directory = directory
        self.token = token.encode("utf-8") if isinstance(token, str) else token
        self.request_timeout = request_timeout

    def handle(self, event: str, body: bytes, headers: Any) -> str:
        """Process one delivery and return the response text.

        Raises WebhookError for anything that is not a 200.
        """
        verify_signature(self.token, body, headers)
        if event == "ping":
            return "pong"
        if event and event != "push":
            raise WebhookError(400, f"unsupported event {event}")

        payload = parse_payload(body, headers.get("content-type", ""))
        urls = candidate_urls(payload)
        for url in urls:
            try:
                checkout = self.directory.by_remote_url(url)
            except UnknownRepositoryError:
                continue
            break
        else:
            logger.warning(f"Cannot find checkout for push to {urls}")
            raise WebhookError(400, "cannot find checkout")

        ctx = RequestContext.with_timeout(self.request_timeout, route="webhook", repo=checkout.alias)
        log = ctx.logger(logger)
        log.info(f"Got push event for {url}")
        try:
            checkout.refresh(ctx)
        except GitVaultError as e:
            log.warning(f"Cannot refresh repository: {e}")
            raise WebhookError(500, f"cannot refresh repository: {e}")
        return f"refreshed repository {url}"


def create_webhook_router(
    directory: RepositoryDirectory,
    token: str,
    *,
    prefix: str = "/public/github",
    tags: list[str] | None = None,
    request_timeout: float | None = 60.0,
) -> APIRouter:
    """Router exposing the push webhook under ``{prefix}/webhook``.

    ``{prefix}/push_event`` is accepted as well for older hook configurations.
    """
    router = APIRouter(prefix=prefix, tags=tags or ["webhook"])
    handler = PushEventHandler(directory, token, request_timeout=request_timeout)

    @router.post("/webhook", response_class=PlainTextResponse)
    @router.post("/push_event", response_class=PlainTextResponse, include_in_schema=False)
    async def push_event(request: Request) -> PlainTextResponse:
        """Refresh the repository a GitHub push event is about."""
        body = await request.body()
        event = request.headers.get("x-github-event", "")
        try:
            # Refresh blocks on network I/O; keep it off the event loop
            message = await run_in_threadpool(handler.handle, event, body, request.headers)
        except WebhookError as e:
            return PlainTextResponse(str(e), status_code=e.status_code)
        return PlainTextResponse(message)

    return router
