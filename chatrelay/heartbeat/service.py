"""Heartbeat polls: ask the agent whether anything needs the owner's attention."""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal

from loguru import logger

from chatrelay.bus.events import ReplyEnvelope, ReplyHooks, ReplyResolver, normalize_reply_result
from chatrelay.config.schema import Config
from chatrelay.observability.audit import DeliveryLog
from chatrelay.reply.tokens import HEARTBEAT_PROMPT, strip_heartbeat_token
from chatrelay.session.store import SessionSnapshot, SessionStore, resolve_session_key
from chatrelay.utils.helpers import elide, format_error, new_connection_id, normalize_e164

HeartbeatSender = Callable[[str, str], Awaitable[str | None]]
HeartbeatStatus = Literal["sent", "ok-empty", "ok-token", "skipped", "failed"]
RecipientSource = Literal["flag", "all", "session-single", "session-ambiguous", "allowFrom"]


@dataclass(frozen=True)
class HeartbeatEvent:
    """Outcome of one heartbeat run for one recipient."""

    status: HeartbeatStatus
    to: str
    preview: str | None = None
    has_media: bool = False
    reason: str | None = None


@dataclass(frozen=True)
class HeartbeatRecipients:
    recipients: list[str]
    source: RecipientSource


def _session_recipients(config: Config, store: SessionStore | None) -> list[str]:
    if store is None or config.session.scope == "global":
        return []
    seen: set[str] = set()
    recipients: list[str] = []
    for row in store.recipients("whatsapp"):
        if row["key"] in ("global", "unknown"):
            continue
        to = normalize_e164(str(row["to"]))
        if len(to) > 1 and to not in seen:
            seen.add(to)
            recipients.append(to)
    return recipients


def _snapshot_session_id(snapshot: SessionSnapshot | None) -> str | None:
    if snapshot is None or snapshot.entry is None:
        return None
    return snapshot.entry.get("session_id")


def resolve_heartbeat_recipients(
    config: Config,
    store: SessionStore | None = None,
    to: str | None = None,
    all_recipients: bool = False,
) -> HeartbeatRecipients:
    """
    Decide who receives a heartbeat.

    An explicit ``to`` wins. Otherwise the last direct routes in the session
    store are used, falling back to the allowlist.
    """
    if to:
        return HeartbeatRecipients([normalize_e164(to)], "flag")

    from_sessions = _session_recipients(config, store)
    allow_from = [normalize_e164(str(e)) for e in config.web.allow_from if e != "*"]

    if all_recipients:
        merged = list(dict.fromkeys(r for r in from_sessions + allow_from if r))
        return HeartbeatRecipients(merged, "all")
    if len(from_sessions) == 1:
        return HeartbeatRecipients(from_sessions, "session-single")
    if len(from_sessions) > 1:
        return HeartbeatRecipients(from_sessions, "session-ambiguous")
    return HeartbeatRecipients(list(dict.fromkeys(allow_from)), "allowFrom")


async def run_web_heartbeat_once(
    config: Config,
    to: str,
    *,
    reply_resolver: ReplyResolver,
    sender: HeartbeatSender,
    session_store: SessionStore | None = None,
    session_id: str | None = None,
    override_body: str | None = None,
    dry_run: bool = False,
    delivery_log: DeliveryLog | None = None,
) -> HeartbeatEvent | None:
    """
    Run one heartbeat for a recipient.

    Args:
        config: Application configuration.
        to: Recipient number.
        reply_resolver: Resolver asked with the heartbeat prompt.
        sender: Async ``(to, text) -> message id`` used to deliver alerts.
        session_store: Store whose ``updated_at`` is restored on token-only replies.
        session_id: Force the session id before running.
        override_body: Send this text instead of asking the resolver.
        dry_run: Log what would be sent without sending.
        delivery_log: Optional structured log.

    Returns:
        The heartbeat event, or None for dry runs.

    Raises:
        ValueError: If ``override_body`` is given but blank.
        Exception: Resolver or send failures, after a ``failed`` event is logged.
    """
    if override_body is not None and not override_body.strip():
        raise ValueError("Override body must be non-empty when provided.")

    log = logger.bind(module="web-heartbeat", run_id=new_connection_id(), to=to)
    session_key = resolve_session_key(config.session.scope, to, config.session.main_key)
    if session_id and session_store is not None:
        session_store.update(session_key, session_id=session_id, updated_at=time.time())
    snapshot = session_store.snapshot(session_key, max(config.session.idle_minutes, 1)) if session_store else None
    if snapshot is not None:
        log.debug(f"heartbeat session snapshot: key={snapshot.key} fresh={snapshot.fresh}")

    def record(event: HeartbeatEvent) -> HeartbeatEvent:
        if delivery_log is not None:
            delivery_log.log_heartbeat(event.to, event.status, preview=event.preview, reason=event.reason)
        return event

    try:
        if override_body:
            if dry_run:
                log.info(f"[dry-run] web send -> {to}: {elide(override_body.strip(), 200)} (manual message)")
                return None
            message_id = await sender(to, override_body)
            log.info(f"manual heartbeat sent to {to} (id {message_id})")
            return record(HeartbeatEvent(status="sent", to=to, preview=override_body[:160]))

        envelope = ReplyEnvelope(
            body=HEARTBEAT_PROMPT,
            from_address=to,
            to_address=to,
            message_sid=session_id or _snapshot_session_id(snapshot),
        )
        payloads = normalize_reply_result(
            await reply_resolver(envelope, ReplyHooks(is_heartbeat=True), config)
        )
        payload = next((p for p in reversed(payloads) if p.text or p.has_media()), None)

        if payload is None:
            log.info("heartbeat skipped (empty reply)")
            return record(HeartbeatEvent(status="ok-empty", to=to))

        has_media = payload.has_media()
        stripped = strip_heartbeat_token(payload.text, mode="heartbeat")
        if stripped.should_skip and not has_media:
            # Heartbeats must not keep an idle session alive.
            if snapshot is not None and snapshot.entry is not None and session_store is not None:
                session_store.touch(snapshot.key, snapshot.entry.get("updated_at"))
            log.info("heartbeat skipped (heartbeat token)")
            return record(HeartbeatEvent(status="ok-token", to=to))

        if has_media:
            log.warning("heartbeat reply contained media; sending text only")

        final_text = stripped.text or payload.text or ""
        if dry_run:
            log.info(f"[dry-run] heartbeat -> {to}: {elide(final_text, 200)}")
            return None

        message_id = await sender(to, final_text)
        log.info(f"heartbeat alert sent to {to} (id {message_id}, {len(final_text)} chars)")
        return record(HeartbeatEvent(status="sent", to=to, preview=final_text[:160], has_media=has_media))
    except Exception as e:
        reason = format_error(e)
        log.warning(f"heartbeat failed ({reason})")
        record(HeartbeatEvent(status="failed", to=to, reason=reason))
        raise


class HeartbeatService:
    """
    Periodically wakes the agent with a heartbeat poll.

    Each tick resolves recipients and runs one heartbeat per recipient;
    failures are logged and the loop keeps going.
    """

    def __init__(self, interval_seconds: int = 1800) -> None:
        self.interval = interval_seconds
        self._running = False

    async def run(self, tick: Callable[[], Awaitable[None]]) -> None:
        """
        Run the heartbeat service loop.

        Args:
            tick: Async callback executed once per interval.
        """
        self._running = True
        logger.info(f"Heartbeat service started (interval: {self.interval}s)")

        while self._running:
            await asyncio.sleep(self.interval)

            if not self._running:
                break

            try:
                await tick()
            except Exception as e:
                logger.error(f"Heartbeat run failed: {e}")

    def stop(self) -> None:
        """Stop the heartbeat service."""
        self._running = False
        logger.info("Heartbeat service stopped")


def heartbeat_tick(
    config: Config,
    *,
    reply_resolver: ReplyResolver,
    sender: HeartbeatSender,
    session_store: SessionStore | None = None,
    delivery_log: DeliveryLog | None = None,
) -> Callable[[], Awaitable[None]]:
    """Build the per-interval callback for ``HeartbeatService.run``."""

    async def tick() -> None:
        targets = resolve_heartbeat_recipients(config, session_store)
        if not targets.recipients:
            logger.debug("Heartbeat: no recipients")
            return
        for to in targets.recipients:
            try:
                await run_web_heartbeat_once(
                    config,
                    to,
                    reply_resolver=reply_resolver,
                    sender=sender,
                    session_store=session_store,
                    delivery_log=delivery_log,
                )
            except Exception as e:
                logger.warning(f"Heartbeat to {to} failed: {format_error(e)}")

    return tick
