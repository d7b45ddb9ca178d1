"""Webhook intake: turn a hosting-platform push notification into a sync run.

The HTTP listener is not part of this package.  Whatever serves the
endpoint hands ``WebhookDispatcher.handle`` the request headers and raw
body and writes back the ``(status, message)`` it returns:

======  =====================================================
Status  Meaning
======  =====================================================
400     Malformed request (unknown platform, bad JSON, no branch)
401     Signature or token did not verify
200     Event or branch ignored, or the sync succeeded
409     The sync was cancelled
500     The sync failed
======  =====================================================

Supported platforms are GitHub, GitLab, Gitea and Bitbucket.  GitHub,
Gitea and Bitbucket sign the body with HMAC SHA-256; GitLab sends the
shared secret verbatim in ``X-Gitlab-Token``.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from upstream_sync.config_schema import SyncConfig, WebhookConfig
from upstream_sync.core.git import GitClient
from upstream_sync.errors import SyncError, UserCancelled, ValidationFailedError
from upstream_sync.sync.engine import SyncOrchestrator
from upstream_sync.sync.models import SyncReport

logger = logging.getLogger(__name__)

# Event header -> platform, in detection order.
PLATFORM_HEADERS: dict[str, str] = {
    "x-github-event": "github",
    "x-gitlab-event": "gitlab",
    "x-bitbucket-event": "bitbucket",
    "x-gitea-event": "gitea",
}

_PUSH_EVENTS = {"push", "Push Hook", "repo:push"}
_PULL_REQUEST_EVENTS = {
    "pull_request",
    "Merge Request Hook",
    "pullrequest:created",
    "pullrequest:updated",
}

SyncTrigger = Callable[[str], Any]


@dataclass
class WebhookEvent:
    """One parsed webhook delivery."""

    platform: str
    event: str
    payload: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def action(self) -> str:
        """Platform-neutral event name: ``push``, ``pull_request`` or the raw name."""
        if self.event in _PUSH_EVENTS:
            return "push"
        if self.event in _PULL_REQUEST_EVENTS:
            return "pull_request"
        return self.event

    @classmethod
    def parse(cls, headers: Mapping[str, str], body: bytes | str) -> WebhookEvent:
        """Detect the platform and decode the JSON body.

        Raises:
            ValidationFailedError: Unknown platform or invalid payload.
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        raw = body.encode("utf-8") if isinstance(body, str) else body
        for header, platform in PLATFORM_HEADERS.items():
            if lowered.get(header):
                event = lowered[header]
                break
        else:
            raise ValidationFailedError("Unrecognised webhook: no platform event header")
        try:
            payload = json.loads(raw.decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValidationFailedError("Webhook body is not valid JSON", cause=exc) from exc
        if not isinstance(payload, dict):
            raise ValidationFailedError("Webhook body must be a JSON object")
        return cls(platform=platform, event=event, payload=payload, headers=lowered, body=raw)

    def branch(self) -> str | None:
        """Branch the event refers to, if the payload names one."""
        p = self.payload
        match (self.platform, self.action):
            case ("github" | "gitea" | "gitlab", "push"):
                ref = p.get("ref")
                return ref.removeprefix("refs/heads/") if isinstance(ref, str) and ref else None
            case ("github" | "gitea", "pull_request"):
                return ((p.get("pull_request") or {}).get("head") or {}).get("ref")
            case ("gitlab", "pull_request"):
                return (p.get("object_attributes") or {}).get("source_branch")
            case ("bitbucket", "push"):
                changes = (p.get("push") or {}).get("changes") or []
                for change in changes:
                    new = (change or {}).get("new") or {}
                    if new.get("name"):
                        return new["name"]
                return None
            case ("bitbucket", "pull_request"):
                return (((p.get("pullrequest") or {}).get("source") or {}).get("branch") or {}).get("name")
        return None


def compute_signature(body: bytes, secret: str) -> str:
    mac = hmac.new(secret.encode("utf-8"), body, hashlib.sha256)
    return mac.hexdigest()


def verify_signature(event: WebhookEvent, secret: str | None) -> bool:
    """Check the delivery against *secret*.  No secret means accept."""
    if not secret:
        logger.warning("No webhook secret configured; accepting unsigned %s event", event.platform)
        return True
    h = event.headers
    match event.platform:
        case "gitlab":
            token = h.get("x-gitlab-token", "")
            return hmac.compare_digest(token.encode(), secret.encode())
        case "github":
            received = h.get("x-hub-signature-256", "")
            if not received.startswith("sha256="):
                return False
            received = received.removeprefix("sha256=")
        case "bitbucket":
            received = h.get("x-hub-signature", "").removeprefix("sha256=")
        case "gitea":
            received = h.get("x-gitea-signature", "")
        case _:
            return False
    if not received:
        return False
    return hmac.compare_digest(received, compute_signature(event.body, secret))


class WebhookDispatcher:
    """Validate deliveries and trigger one sync per accepted event.

    Args:
        config: Webhook settings.
        trigger: Runs a sync for the given branch.  Raised ``SyncError``s
            are mapped to HTTP statuses.
        default_branch: Trigger branch when ``config.trigger_branch`` is
            unset (normally the configured upstream branch).
    """

    def __init__(
        self, config: WebhookConfig, trigger: SyncTrigger, default_branch: str = "main"
    ) -> None:
        self.config = config
        self.trigger = trigger
        self.trigger_branch = config.trigger_branch or default_branch
        self.history: list[dict[str, Any]] = []

    def handle(self, headers: Mapping[str, str], body: bytes | str) -> tuple[int, str]:
        try:
            event = WebhookEvent.parse(headers, body)
        except ValidationFailedError as exc:
            logger.warning("Rejected webhook: %s", exc.message)
            return 400, exc.message

        logger.info("Received %s %s webhook", event.platform, event.event)
        if not verify_signature(event, self.config.secret):
            logger.warning("Invalid signature on %s webhook", event.platform)
            return 401, "Invalid signature"

        allowed = self.config.allowed_events
        if event.event not in allowed and event.action not in allowed:
            logger.info("Ignoring event type %s", event.event)
            return 200, "Ignored event type"

        branch = event.branch()
        if not branch:
            return 400, "No branch information"
        if branch != self.trigger_branch:
            logger.info("Ignoring push to %s (trigger branch is %s)", branch, self.trigger_branch)
            return 200, "Ignored branch"

        self.history.append({"platform": event.platform, "event": event.event, "branch": branch})
        try:
            self.trigger(branch)
        except UserCancelled as exc:
            logger.info("Webhook sync cancelled: %s", exc.message)
            return 409, exc.message
        except SyncError as exc:
            logger.error("Webhook sync failed: %s", exc.message, extra={"error": exc.to_dict()})
            return 500, exc.message
        except Exception as exc:
            logger.exception("Webhook sync crashed")
            return 500, str(exc) or type(exc).__name__
        return 200, f"Sync completed for {branch}"


def orchestrator_trigger(config: SyncConfig, git: GitClient, **kwargs: Any) -> SyncTrigger:
    """Build a trigger that runs one non-interactive sync of the pushed branch.

    Extra keyword arguments go to ``SyncOrchestrator``.
    """

    def _trigger(branch: str) -> SyncReport:
        run_config = config.model_copy(update={"upstream_branch": branch, "non_interactive": True})
        report = SyncOrchestrator(run_config, git, **kwargs).run()
        logger.info("Webhook sync %s finished (commit %s)", report.session_id, report.commit or "none")
        return report

    return _trigger
