"""
Agent runtime dispatch.

One authenticated POST per turn to the worker's invoke endpoint. Single
attempt: a stale retry would land out of conversational context, so a
failure surfaces as DispatchError and the caller apologises instead.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import httpx

from chatrelay.adapters.messages import ReplyTarget, session_key_for
from chatrelay.errors import ConfigurationError, DispatchError
from chatrelay.models import Agent

logger = logging.getLogger(__name__)

NO_RESPONSE = "(no response)"


@dataclass
class AgentUsage:
    model: str
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class AgentReply:
    reply_text: str
    usage: AgentUsage


class SessionLocks:
    """
    One asyncio.Lock per session key, dropped when no holder or waiter remains.

    Keeps two near-simultaneous messages in the same thread from interleaving
    in the runtime's per-session storage. In-process only.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def extract_reply_text(body: dict[str, Any]) -> str:
    """replyText if present, else the non-empty payload text fragments joined."""
    reply = body.get("replyText")
    if isinstance(reply, str) and reply.strip():
        return reply
    payloads = body.get("payloads") or []
    fragments = [
        p.get("text") for p in payloads if isinstance(p, dict) and isinstance(p.get("text"), str)
    ]
    text = "\n".join(f for f in fragments if f)
    return text or NO_RESPONSE


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


class AgentDispatcher:
    """Builds invocation requests and calls the agent runtime worker."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        worker_url: str | None,
        worker_api_secret: str | None,
        timeout_seconds: float = 120.0,
        default_model: str = "claude-sonnet-4-20250514",
        session_locks: SessionLocks | None = None,
    ):
        self._http = http
        self.worker_url = worker_url.rstrip("/") if worker_url else None
        self.worker_api_secret = worker_api_secret
        self.timeout_seconds = timeout_seconds
        self.default_model = default_model
        self.session_locks = session_locks

    def _require_worker(self) -> tuple[str, str]:
        if not self.worker_url or not self.worker_api_secret:
            raise ConfigurationError("WORKER_URL or WORKER_API_SECRET not configured")
        return self.worker_url, self.worker_api_secret

    def build_request(
        self, tenant_id: str, prompt: str, target: ReplyTarget, agent: Agent | None
    ) -> dict[str, Any]:
        return {
            "tenantId": tenant_id,
            "prompt": prompt,
            "channel": target.channel,
            "sessionKey": session_key_for(tenant_id, target),
            "replyConfig": target.reply_config(),
            "agentConfig": {
                "model": agent.model if agent else None,
                "systemPrompt": agent.system_prompt if agent else None,
            },
        }

    async def invoke(
        self, tenant_id: str, prompt: str, target: ReplyTarget, agent: Agent | None = None
    ) -> AgentReply:
        """
        Run one agent turn and return its reply and token usage.

        Raises:
            ConfigurationError: worker URL or shared secret missing
            DispatchError: transport failure, timeout, non-2xx, or bad body
        """
        worker_url, secret = self._require_worker()
        body = self.build_request(tenant_id, prompt, target, agent)

        if self.session_locks is None:
            return await self._post_invoke(worker_url, secret, body, agent)
        async with self.session_locks.hold(body["sessionKey"]):
            return await self._post_invoke(worker_url, secret, body, agent)

    async def _post_invoke(
        self, worker_url: str, secret: str, body: dict[str, Any], agent: Agent | None
    ) -> AgentReply:
        tenant_id = body["tenantId"]
        logger.info("Dispatching to worker for tenant=%s channel=%s", tenant_id, body["channel"])
        try:
            res = await self._http.post(
                f"{worker_url}/api/agent/invoke",
                json=body,
                headers={"Authorization": f"Bearer {secret}"},
                timeout=self.timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            raise DispatchError(
                f"Agent runtime timed out after {self.timeout_seconds:.0f}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise DispatchError(f"Agent runtime unreachable: {exc}") from exc

        if res.status_code >= 400:
            logger.error("Worker error for tenant=%s: %s %s", tenant_id, res.status_code, res.text)
            raise DispatchError(
                f"Agent runtime returned HTTP {res.status_code}", {"body": res.text[:1000]}
            )

        try:
            result = res.json()
        except ValueError:
            logger.error("Worker returned non-JSON body for tenant=%s: %s", tenant_id, res.text)
            raise DispatchError("Agent runtime returned a non-JSON body") from None
        if not isinstance(result, dict) or result.get("ok") is not True:
            error = result.get("error") if isinstance(result, dict) else None
            logger.error("Worker reported failure for tenant=%s: %s", tenant_id, error)
            raise DispatchError(error or "Agent runtime reported failure")

        usage = result.get("usage") if isinstance(result.get("usage"), dict) else {}
        fallback_model = agent.model if agent else self.default_model
        return AgentReply(
            reply_text=extract_reply_text(result),
            usage=AgentUsage(
                model=usage.get("model") or fallback_model,
                input_tokens=_as_int(usage.get("inputTokens")),
                output_tokens=_as_int(usage.get("outputTokens")),
            ),
        )

    async def clear_session(self, tenant_id: str, session_key: str) -> bool:
        """Best-effort delete of the runtime's stored session. Never raises."""
        if not self.worker_url or not self.worker_api_secret:
            return False
        try:
            res = await self._http.request(
                "DELETE",
                f"{self.worker_url}/api/agent/session",
                json={"tenantId": tenant_id, "sessionKey": session_key},
                headers={"Authorization": f"Bearer {self.worker_api_secret}"},
                timeout=10.0,
            )
            res.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Failed to delete worker session for tenant=%s: %s", tenant_id, exc)
            return False
        return True
