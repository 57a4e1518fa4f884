"""Response correlation: tasks created from outbound sends, matched against inbound replies."""

import json
import logging
import math
import uuid
from collections import OrderedDict
from typing import Any

import httpx

from replytrack.core import clock
from replytrack.core.config import Constants, settings
from replytrack.core.errors import ErrorCode, TaskValidationError
from replytrack.core.jid import infer_scope_from_jid, normalize_jid, same_actor
from replytrack.core.logging import format_timestamp_br, log_task_debug, span
from replytrack.core.text_match import matches_expected, normalize_expected
from replytrack.domain.task import (
    ACTIVE_STATUSES,
    OPEN_TEMPORARY_STATUSES,
    TERMINAL_STATUSES,
    ExpectedEntry,
    OnTimeout,
    ParsedResponse,
    SelectedEntry,
    Task,
    TaskStatus,
    parse_action,
)
from replytrack.interface.message_parser import parse_response_from_message, resolve_sender_jid
from replytrack.interface.transport import MessagingTransport
from replytrack.services.action_runner import run_action, run_action_with_retries
from replytrack.services.task_store import TaskStore


logger = logging.getLogger(__name__)

_MISSING = object()


def resolve_task_timeout_ms(raw: object, fallback_ms: int, *, persistent: bool = False) -> int | None:
    """Resolve the `awaitResponse.timeoutMs` setting into a timeout, or None for no expiry.

    Persistent tasks never expire; `null`/`false` and non-positive values
    disable expiry; an absent, empty or non-numeric value uses `fallback_ms`.
    """
    if persistent or raw is None or raw is False:
        return None
    if raw is _MISSING or raw == "":
        return fallback_ms

    try:
        value = float(raw)
    except (TypeError, ValueError):
        return fallback_ms
    if not math.isfinite(value):
        return fallback_ms
    if value <= 0:
        return None
    return math.floor(value)


def resolve_task_expires_at_ms(task: Task) -> int | None:
    """Expiry of a task: explicit `expires_at_ms`, else `expires_at`, else creation time plus timeout."""
    if task.expires_at_ms and task.expires_at_ms > 0:
        return task.expires_at_ms

    parsed = clock.parse_iso_ms(task.expires_at)
    if parsed:
        return parsed

    if not task.timeout_ms or task.timeout_ms <= 0:
        return None

    if task.created_at_ms and task.created_at_ms > 0:
        return task.created_at_ms + task.timeout_ms

    created = clock.parse_iso_ms(task.created_at)
    return created + task.timeout_ms if created else None


def infer_expected_from_content(content: object) -> list[dict[str, Any]]:
    """Derive expected replies from the buttons, list rows and native-flow buttons of outbound content."""
    expected: list[dict[str, Any]] = []
    if not isinstance(content, dict):
        return expected

    def _add(key: object, text: object) -> None:
        key = str(key or "").strip()
        text = str(text or "").strip()
        if key or text:
            expected.append({"key": key, "aliases": [text] if text else []})

    for button in content.get("buttons") or []:
        if isinstance(button, dict):
            button_text = button.get("buttonText")
            _add(button.get("buttonId"), button_text.get("displayText") if isinstance(button_text, dict) else None)

    for section in content.get("sections") or []:
        rows = section.get("rows") if isinstance(section, dict) else None
        for row in rows if isinstance(rows, list) else []:
            if isinstance(row, dict):
                _add(row.get("rowId"), row.get("title"))

    for item in content.get("interactiveButtons") or []:
        params = item.get("buttonParamsJson") if isinstance(item, dict) else None
        if not params:
            continue
        try:
            parsed = json.loads(params)
        except (TypeError, ValueError):
            continue
        if isinstance(parsed, dict):
            _add(parsed.get("id") or parsed.get("selection_id"), parsed.get("display_text"))

    return expected


def _append_note(notes: str | None, note: str) -> str:
    return " | ".join(part for part in (notes, note) if part)


class ResponseTaskService:
    """Creates response tasks, correlates inbound messages with them and runs their actions.

    No task state is cached: every operation reads the store.
    """

    def __init__(
        self,
        store: TaskStore,
        transport: MessagingTransport,
        *,
        default_timeout_ms: int | None = None,
        retention_ms: int | None = None,
        timeout_retry_attempts: int | None = None,
        timeout_retry_delay_ms: int | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.store = store
        self.transport = transport
        self.default_timeout_ms = default_timeout_ms or settings.default_task_timeout_ms
        self.retention_ms = retention_ms or settings.task_retention_ms
        self.timeout_retry_attempts = timeout_retry_attempts or settings.timeout_action_retry_attempts
        self.timeout_retry_delay_ms = (
            timeout_retry_delay_ms if timeout_retry_delay_ms is not None else settings.timeout_action_retry_delay_ms
        )
        self.http_client = http_client
        self._started = False
        self._maintenance_running = False
        self._recent_message_ids: OrderedDict[str, None] = OrderedDict()

    # Lifecycle

    def start(self) -> None:
        """Subscribe to inbound messages. Idempotent."""
        if self._started:
            return
        self._started = True
        self.transport.subscribe(self.handle_messages_upsert)
        logger.info("Response task service started")

    def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        self.transport.unsubscribe(self.handle_messages_upsert)
        logger.info("Response task service stopped")

    @property
    def started(self) -> bool:
        return self._started

    # Creation

    async def _supersede(self, to: str, *, reason: str, except_task_id: str | None = None) -> None:
        """Cancel the other open temporary tasks on a conversation."""
        for task in await self.store.find(statuses=OPEN_TEMPORARY_STATUSES, to=to):
            if except_task_id and task.id == except_task_id:
                continue
            await self.store.update(
                task.id,
                lambda current: {
                    "status": TaskStatus.CANCELLED,
                    "cancelled_at": clock.iso_now(),
                    "notes": _append_note(current.notes, f"auto_cancel_reason:{reason}"),
                },
                only_if_status=OPEN_TEMPORARY_STATUSES,
            )
            logger.info("Superseded task", extra={"task_id": task.id, "to": to, "reason": reason})

    async def create_from_send(
        self,
        request_body: dict[str, Any],
        send_result: dict[str, Any] | None,
        parent_task_id: str | None = None,
    ) -> Task | None:
        """Register a task for a message that was just sent with `awaitResponse`.

        Returns:
            The created task, or None when the request does not await a response

        Raises:
            TaskValidationError: AWAIT_RESPONSE_EXPECTED_REQUIRED when no expected reply is
                given or inferable, INVALID_ACTION/ACTION_PAYLOAD_REQUIRED for bad actions
        """
        cfg = request_body.get("awaitResponse")
        if not cfg and not isinstance(cfg, dict):
            return None
        cfg = cfg if isinstance(cfg, dict) else {}
        send_result = send_result or {}

        with span("correlation_service.create_from_send"):
            to = normalize_jid(request_body.get("to") or send_result.get("to"))
            persistent = bool(cfg.get("persistent"))
            timeout_ms = resolve_task_timeout_ms(
                cfg.get("timeoutMs", _MISSING), self.default_timeout_ms, persistent=persistent
            )

            explicit = cfg.get("expected")
            raw_expected = (
                explicit
                if isinstance(explicit, list) and explicit
                else infer_expected_from_content(request_body.get("content"))
            )
            expected = normalize_expected(raw_expected)
            if not expected:
                raise TaskValidationError(ErrorCode.AWAIT_RESPONSE_EXPECTED_REQUIRED)

            on_timeout = OnTimeout.model_validate(cfg["onTimeout"]) if isinstance(cfg.get("onTimeout"), dict) else None

            created_at_ms = clock.now_ms()
            created_at = clock.iso_from_ms(created_at_ms)
            task = Task(
                id=str(uuid.uuid4()),
                status=TaskStatus.PERSISTENT if persistent else TaskStatus.PENDING,
                to=to,
                scope=infer_scope_from_jid(to),
                request_body_type=request_body.get("type") or "auto",
                sent_message_id=send_result.get("messageId") or None,
                expected=expected,
                on_timeout=on_timeout,
                created_at=created_at,
                created_at_ms=created_at_ms,
                expires_at=clock.iso_from_ms(created_at_ms + timeout_ms) if timeout_ms else None,
                expires_at_ms=created_at_ms + timeout_ms if timeout_ms else None,
                timeout_ms=timeout_ms,
                updated_at=created_at,
                notes=str(cfg["notes"]) if cfg.get("notes") else None,
            )

            if not persistent:
                await self._supersede(to, reason="new_temporary_task_created", except_task_id=parent_task_id)

            await self.store.save(task)

        logger.info(
            f"{format_timestamp_br()} TASK_CREATED id={task.id} status={task.status} to={task.to} "
            f"sentMessageId={task.sent_message_id or '-'} timeoutMs={task.timeout_ms or 'none'}",
            extra={"task_id": task.id, "parent_task_id": parent_task_id},
        )
        return task

    async def create_persistent_command(
        self,
        to: str,
        expected: list[dict[str, Any]] | None,
        action: dict[str, Any] | None = None,
        notes: str | None = None,
    ) -> Task:
        """Create a standing command: a task that never expires and re-arms after every match.

        Entries without their own action inherit `action`.

        Raises:
            TaskValidationError: TO_INVALID/TO_INVALID_JID, PERSISTENT_EXPECTED_REQUIRED,
                or an action validation code
        """
        normalized_to = normalize_jid(to)
        raw_entries = expected if isinstance(expected, list) else []
        if action is not None:
            parse_action(action)
            raw_entries = [
                {**entry, "action": action} if isinstance(entry, dict) and not entry.get("action") else entry
                for entry in raw_entries
            ]
        items = normalize_expected(raw_entries)
        if not items:
            raise TaskValidationError(ErrorCode.PERSISTENT_EXPECTED_REQUIRED)

        created_at_ms = clock.now_ms()
        created_at = clock.iso_from_ms(created_at_ms)
        task = Task(
            id=str(uuid.uuid4()),
            status=TaskStatus.PERSISTENT,
            to=normalized_to,
            scope=infer_scope_from_jid(normalized_to),
            request_body_type="persistent_command",
            expected=items,
            created_at=created_at,
            created_at_ms=created_at_ms,
            updated_at=created_at,
            notes=str(notes) if notes else None,
        )
        await self.store.save(task)
        logger.info(
            f"{format_timestamp_br()} TASK_CREATED id={task.id} status={task.status} to={task.to} "
            "sentMessageId=- timeoutMs=none",
            extra={"task_id": task.id},
        )
        return task

    async def _create_chained_task(
        self,
        request_body: dict[str, Any],
        send_result: dict[str, Any],
        parent_task_id: str | None,
    ) -> Task | None:
        return await self.create_from_send(request_body, send_result, parent_task_id)

    # Inbound correlation

    async def handle_messages_upsert(self, event: dict[str, Any]) -> None:
        """Handle a batch of inbound messages in order. One failing message never stops the batch."""
        messages = event.get("messages") if isinstance(event, dict) else None
        for message in messages if isinstance(messages, list) else []:
            try:
                await self.on_inbound_event(message)
            except Exception:
                logger.exception("Failed to correlate inbound message")

    def _select_candidates(
        self,
        active: list[Task],
        response: ParsedResponse,
        sender: str,
    ) -> list[Task]:
        if response.reply_to_message_id:
            threaded = [
                task
                for task in active
                if task.status == TaskStatus.PENDING
                and task.sent_message_id
                and task.sent_message_id == response.reply_to_message_id
            ]
            if threaded:
                return threaded

        by_actor = [task for task in active if same_actor(task.to, sender)]
        if by_actor:
            return by_actor

        by_expected = [task for task in active if matches_expected(task.expected, response)]
        if len(by_expected) == 1:
            log_task_debug(logger, f"fallback_by_expected task={by_expected[0].id} sender={sender}")
            return by_expected
        if by_expected:
            log_task_debug(logger, f"fallback_by_expected ambiguous candidates={len(by_expected)} sender={sender}")
        return []

    def _seen_before(self, key: object) -> bool:
        """Remember an inbound message id; True when the same message was already handled."""
        if not isinstance(key, dict) or not key.get("id"):
            return False
        message_key = f"{key.get('remoteJid')}:{key['id']}"
        if message_key in self._recent_message_ids:
            return True
        self._recent_message_ids[message_key] = None
        if len(self._recent_message_ids) > Constants.RECENT_MESSAGE_IDS_MAXLEN:
            self._recent_message_ids.popitem(last=False)
        return False

    async def on_inbound_event(self, message: object) -> None:
        """Correlate one inbound message with the open tasks and act on the first match."""
        if not isinstance(message, dict):
            return
        key = message.get("key")
        if isinstance(key, dict) and key.get("fromMe"):
            return
        if self._seen_before(key):
            log_task_debug(logger, f"duplicate inbound message key={key}")
            return

        sender_jid = resolve_sender_jid(message)
        if not sender_jid:
            return

        response = parse_response_from_message(message)
        if response is None:
            self._log_task_related(sender_jid, "<no-parseable-content>", related=False)
            return

        try:
            sender = normalize_jid(sender_jid)
        except TaskValidationError:
            sender = sender_jid.lower()

        now = clock.now_ms()
        active = await self.store.find(statuses=ACTIVE_STATUSES)
        candidates = self._select_candidates(active, response, sender)

        self._log_task_related(sender_jid, response.text or response.key or "<no-content>", related=bool(candidates))
        log_task_debug(
            logger,
            f"msg sender={sender} key={response.key or '-'} text={response.text or '-'} "
            f"stanza={response.reply_to_message_id or '-'} active={len(active)} candidates={len(candidates)}",
        )

        for task in candidates:
            if task.status == TaskStatus.PENDING and task.expires_at_ms and task.expires_at_ms <= now:
                await self.store.update(
                    task.id,
                    {"status": TaskStatus.EXPIRED, "expired_at": clock.iso_now()},
                    only_if_status={TaskStatus.PENDING},
                )
                continue

            matched = matches_expected(task.expected, response)
            if matched is None:
                continue

            if task.status == TaskStatus.PENDING:
                claimed = await self.store.update(
                    task.id,
                    {"status": TaskStatus.ATTENDING, "attending_at": clock.iso_now()},
                    only_if_status={TaskStatus.PENDING},
                )
                if claimed is None:
                    log_task_debug(logger, f"task={task.id} claim lost")
                    continue

            await self._complete_match(task, matched, response)
            break

    async def _complete_match(self, task: Task, matched: ExpectedEntry, response: ParsedResponse) -> None:
        if task.status == TaskStatus.PERSISTENT:
            # Before the action, so a task chained by the action stays open
            await self._supersede(task.to or "", reason="persistent_command_triggered")

        selected = SelectedEntry(key=matched.key, aliases=matched.aliases)
        context = {
            "taskId": task.id,
            "to": task.to,
            "response": {
                "key": response.key,
                "text": response.text,
                "replyToMessageId": response.reply_to_message_id or None,
            },
            "selected": matched.model_dump(mode="json", by_alias=True),
        }

        action_result = None
        if matched.action is not None:
            try:
                action_result = await run_action(
                    matched.action,
                    context,
                    self.transport,
                    self._create_chained_task,
                    http_client=self.http_client,
                )
            except Exception as e:
                logger.exception("Task action failed", extra={"task_id": task.id})
                action_result = {"ok": False, "error": str(e) or ErrorCode.ACTION_EXECUTION_FAILED}

        log_task_debug(
            logger,
            f"task={task.id} status={task.status} "
            f"matched={matched.key or (matched.aliases[0] if matched.aliases else 'alias')} "
            f"action={'yes' if matched.action else 'no'}",
        )

        triggered_at = clock.iso_now()

        def _match_patch(current: Task) -> dict[str, Any]:
            return {
                "selected": selected,
                "response": response,
                "action_result": action_result,
                "last_triggered_at": triggered_at,
                "trigger_count": current.trigger_count + 1,
            }

        if task.status == TaskStatus.PERSISTENT:
            updated = await self.store.update(task.id, _match_patch, only_if_status={TaskStatus.PERSISTENT})
        else:
            updated = await self.store.update(
                task.id,
                lambda current: {**_match_patch(current), "status": TaskStatus.COMPLETED, "completed_at": triggered_at},
                only_if_status={TaskStatus.ATTENDING},
            )
            if updated is None:
                # Expired or cancelled while the action ran: keep what the action did
                late_match = {
                    "selected": selected.model_dump(mode="json", by_alias=True),
                    "response": response.model_dump(mode="json", by_alias=True),
                    "result": action_result,
                    "triggeredAt": triggered_at,
                }
                updated = await self.store.update(
                    task.id,
                    lambda current: {"action_result": {**(current.action_result or {}), "match": late_match}},
                    only_if_status={TaskStatus.EXPIRED, TaskStatus.CANCELLED},
                )
                if updated is not None:
                    logger.warning(
                        "Task finished while its action ran; match kept under action_result.match",
                        extra={"task_id": task.id, "status": str(updated.status)},
                    )
                    return

        if updated is None:
            logger.warning("Task changed while its action ran; match not recorded", extra={"task_id": task.id})

    def _log_task_related(self, sender_jid: str, content: str, *, related: bool) -> None:
        logger.info(
            f"{format_timestamp_br()} Message from [{sender_jid}]: {content} "
            f"| TASK_RELATED={'true' if related else 'false'}"
        )

    # Queries and manual transitions

    async def get(self, task_id: str) -> Task | None:
        return await self.store.get_by_id(task_id)

    async def list_tasks(
        self,
        *,
        status: str | None = None,
        to: str | None = None,
        limit: int | None = None,
    ) -> list[Task]:
        """Tasks newest first, optionally filtered by status and recipient.

        Raises:
            TaskValidationError: if `to` is not a valid destination
        """
        normalized_to = normalize_jid(str(to)) if to else None
        return await self.store.find(statuses=[status] if status else None, to=normalized_to, limit=limit)

    async def stats(self) -> dict[str, Any]:
        by_status: dict[str, int] = {}
        tasks = await self.store.get_all()
        for task in tasks:
            by_status[str(task.status)] = by_status.get(str(task.status), 0) + 1
        return {"total": len(tasks), "byStatus": by_status}

    async def cancel(self, task_id: str) -> Task | None:
        """Cancel a task. Finished tasks are returned unchanged; None if the task does not exist."""
        task = await self.store.get_by_id(task_id)
        if task is None:
            return None
        if task.is_terminal:
            return task

        updated = await self.store.update(
            task_id,
            {"status": TaskStatus.CANCELLED, "cancelled_at": clock.iso_now()},
            only_if_status=set(TaskStatus) - TERMINAL_STATUSES,
        )
        if updated is None:
            return await self.store.get_by_id(task_id)
        logger.info("Cancelled task", extra={"task_id": task_id})
        return updated

    async def remove(self, task_id: str) -> bool:
        return await self.store.remove(task_id)

    # Maintenance

    async def expire_pending_tasks(self) -> None:
        """Expire open temporary tasks past their deadline and run their timeout actions."""
        now = clock.now_ms()
        for task in await self.store.find(statuses=OPEN_TEMPORARY_STATUSES):
            expires_at_ms = resolve_task_expires_at_ms(task)

            if not expires_at_ms or expires_at_ms > now:
                if expires_at_ms and task.expires_at_ms != expires_at_ms:
                    await self.store.update(
                        task.id,
                        {
                            "expires_at_ms": expires_at_ms,
                            "expires_at": task.expires_at or clock.iso_from_ms(expires_at_ms),
                        },
                    )
                continue

            expired = await self.store.update(
                task.id,
                {
                    "status": TaskStatus.EXPIRED,
                    "expired_at": clock.iso_now(),
                    "expires_at_ms": expires_at_ms,
                    "expires_at": task.expires_at or clock.iso_from_ms(expires_at_ms),
                },
                only_if_status=OPEN_TEMPORARY_STATUSES,
            )
            if expired is None or expired.on_timeout is None or expired.on_timeout.action is None:
                continue

            await self._run_timeout_action(expired)

    async def _run_timeout_action(self, task: Task) -> None:
        try:
            result = await run_action_with_retries(
                task.on_timeout.action if task.on_timeout else None,
                {"taskId": task.id, "to": task.to, "reason": "timeout"},
                self.transport,
                self._create_chained_task,
                attempts=self.timeout_retry_attempts,
                delay_ms=self.timeout_retry_delay_ms,
                http_client=self.http_client,
            )
        except Exception as e:
            logger.exception("Timeout action raised", extra={"task_id": task.id})
            result = {"ok": False, "error": str(e) or ErrorCode.TIMEOUT_ACTION_FAILED}

        await self.store.update(
            task.id,
            lambda current: {"action_result": {**(current.action_result or {}), "timeout": result}},
        )

        if result.get("ok"):
            logger.info(
                f"{format_timestamp_br()} TASK_TIMEOUT_ACTION_OK id={task.id} to={task.to} "
                f"attempts={result.get('attemptsUsed', 1)}"
            )
        else:
            logger.error(
                f"{format_timestamp_br()} TASK_TIMEOUT_ACTION_FAILED id={task.id} to={task.to} "
                f"error={result.get('error') or 'unknown'}"
            )

    async def cleanup_finished_tasks(self) -> int:
        """Delete finished tasks older than the retention window.

        Returns:
            Number of tasks removed
        """
        now = clock.now_ms()
        removed = 0
        for task in await self.store.find(statuses=TERMINAL_STATUSES):
            reference = (
                task.completed_at or task.expired_at or task.cancelled_at or task.updated_at or task.created_at
            )
            reference_ms = clock.parse_iso_ms(reference)
            if reference_ms is None:
                continue
            if now - reference_ms >= self.retention_ms and await self.store.remove(task.id):
                removed += 1

        if removed:
            logger.info("Removed finished tasks", extra={"count": removed})
        return removed

    async def run_maintenance_tick(self) -> None:
        """One maintenance pass: expire sweep, then retention sweep. Overlapping calls are skipped."""
        if self._maintenance_running:
            return
        self._maintenance_running = True
        try:
            with span("correlation_service.maintenance"):
                await self.expire_pending_tasks()
                await self.cleanup_finished_tasks()
        finally:
            self._maintenance_running = False

