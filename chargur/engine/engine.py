"""
Streaming Conversation Engine.

Turns a user's chat message into a durable, resumable, incrementally
rendered assistant response:

    send_message(text)
      -> append user message to history
      -> reset transient state
      -> ensure conversation exists
      -> attempt loop
           attempt > 1: try recovery from the checkpoint store first
           open agent stream -> FrameParser -> apply events in order
           failure -> RetryController decides: back off and retry, or stop

At most one send_message may mutate state at a time. Starting a new one
cancels the task running the previous one, which closes its HTTP stream.
Every mutation also checks the generation number, so a superseded run that
is still unwinding cannot touch state.
"""

import asyncio
import logging
import time
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from chargur.config import EngineConfig, resolve_credentials
from chargur.engine.autofill import AutoFillUpdate
from chargur.engine.checkpoints import CheckpointWriter
from chargur.engine.events import EngineEventType, EventBus, Listener
from chargur.engine.recovery import RecoveryController, RecoveryResult
from chargur.engine.retry import RetryController, is_auth_failure
from chargur.engine.session import ConversationSessionManager, SessionKey
from chargur.engine.state import EngineSnapshot, EngineState
from chargur.exceptions import (
    GENERIC_FAILURE_MESSAGE,
    AuthenticationRequired,
    CancelledByNewRequest,
    ChargurError,
    RemoteError,
    StoreError,
    TransportFailure,
)
from chargur.logging import (
    SessionLogEntry,
    StreamLogEntry,
    get_session_id,
    now_iso,
    session_logger,
    set_session_id,
    stream_logger,
)
from chargur.store.client import CheckpointStoreClient
from chargur.store.models import ChatMessage, CompleteResponse, ConversationStatus, MessageRole, utcnow
from chargur.stream.frames import EventType, FrameParser, StreamEvent, iter_events
from chargur.stream.transport import AgentRequest, AgentTransport

logger = logging.getLogger(__name__)

SIGN_IN_MESSAGE = "Please sign in to chat with the AI assistant"

# Tolerance between client and store clocks when matching stored responses
CLOCK_SKEW = timedelta(seconds=5)


@dataclass
class _Exchange:
    """Bookkeeping for one send_message call."""

    generation: int
    user_text: str
    history: list[dict[str, str]]
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: datetime = field(default_factory=utcnow)
    conversation_id: str | None = None
    checkpoints: CheckpointWriter | None = None

    # Each lifecycle event fires at most once per exchange
    auto_fill_sent: bool = False
    stage_complete_sent: bool = False
    navigate_sent: bool = False


class StreamingConversationEngine:
    """
    Conversation engine for one stage of one project.

    Usage:
        async with StreamingConversationEngine(config) as engine:
            engine.subscribe(EngineEventType.AUTO_FILL, on_auto_fill)
            await engine.start(SessionKey(project_id, stage_id, user_id))
            await engine.send_message("I want a recipe app")
            print(engine.snapshot.content)
    """

    def __init__(
        self,
        config: EngineConfig,
        transport: AgentTransport | None = None,
        store: CheckpointStoreClient | None = None,
        *,
        retry: RetryController | None = None,
        events: EventBus | None = None,
    ):
        """
        Initialize the engine.

        Args:
            config: Endpoint, credential provider and retry settings
            transport: Agent transport (created from config if omitted)
            store: Checkpoint store client (created from config if omitted)
            retry: Retry controller, reset at the start of every send_message
            events: Event bus shared with listeners
        """
        self.config = config
        self.transport = transport or AgentTransport(config)
        self.store = store or CheckpointStoreClient(config)
        self._owns_transport = transport is None
        self._owns_store = store is None

        self.retry = retry or RetryController(config.max_retries, config.base_delay)
        self.events = events or EventBus()
        self.sessions = ConversationSessionManager(self.store)
        self.recovery = RecoveryController(self.store)

        # Stage context sent with every request
        self.current_stage_data: dict[str, Any] = {}
        self.all_stage_data: dict[str, Any] = {}
        self.memory: dict[str, Any] = {}
        self.recommendations: list[Any] = []

        self._state = EngineState()
        self._generation = 0
        self._task: asyncio.Task | None = None
        self._last_user_text: str | None = None
        self._marked_failed: set[str] = set()
        self._session_id = str(uuid.uuid4())

    async def __aenter__(self) -> "StreamingConversationEngine":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.dispose()

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> EngineSnapshot:
        return self._state.snapshot()

    @property
    def key(self) -> SessionKey | None:
        return self.sessions.key

    def subscribe(self, event_type: EngineEventType, listener: Listener):
        """Register a listener; returns a callable that unsubscribes it."""
        return self.events.subscribe(event_type, listener)

    async def start(
        self,
        key: SessionKey,
        current_stage_data: dict[str, Any] | None = None,
        all_stage_data: dict[str, Any] | None = None,
    ) -> EngineSnapshot:
        """
        Activate a session and replay its stored history.

        Raises:
            StoreError: If the conversation lookup fails
        """
        set_session_id(self._session_id)
        await self._activate(key, current_stage_data, all_stage_data, event_type="start")
        return self.snapshot

    async def switch_stage(
        self,
        key: SessionKey,
        current_stage_data: dict[str, Any] | None = None,
        all_stage_data: dict[str, Any] | None = None,
    ) -> EngineSnapshot:
        """
        Move to another (project, stage) pair.

        Cancels any in-flight message and clears every trace of the previous
        stage before loading the new one.
        """
        await self._supersede()
        await self._activate(key, current_stage_data, all_stage_data, event_type="switch")
        return self.snapshot

    def set_stage_data(
        self,
        current_stage_data: dict[str, Any],
        all_stage_data: dict[str, Any] | None = None,
    ) -> None:
        """Update the stage context sent with the next request."""
        self.current_stage_data = dict(current_stage_data)
        if all_stage_data is not None:
            self.all_stage_data = dict(all_stage_data)

    async def send_message(self, user_text: str) -> None:
        """
        Send a message and stream the response into state.

        Returns once the exchange is finished, failed, or superseded by a
        newer send_message. Failures are reported through snapshot.error,
        never raised.
        """
        await self._send(user_text, append_user=True)

    def submit(self, user_text: str) -> asyncio.Task:
        """Fire-and-forget form of send_message."""
        return asyncio.create_task(self.send_message(user_text))

    async def retry_last(self) -> None:
        """Re-run the last exchange after a terminal error."""
        if self._state.error is None or self._last_user_text is None:
            return
        await self._send(self._last_user_text, append_user=False)

    def clear_error(self) -> None:
        if self._state.error is not None:
            self._state.error = None
            self._publish()

    async def cancel(self) -> None:
        """Stop the in-flight message, keeping whatever content has arrived."""
        await self._supersede()
        if self._state.is_loading:
            self._state.is_loading = False
            self._publish()

    async def dispose(self) -> None:
        """Cancel in-flight work and close clients this engine created."""
        await self._supersede()
        await self.events.drain()
        if self._owns_transport:
            await self.transport.close()
        if self._owns_store:
            await self.store.close()
        self._log_session("end")

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def _activate(
        self,
        key: SessionKey,
        current_stage_data: dict[str, Any] | None,
        all_stage_data: dict[str, Any] | None,
        event_type: str,
    ) -> None:
        self.sessions.reset()
        self._state = EngineState()
        self._last_user_text = None
        self.current_stage_data = dict(current_stage_data or {})
        if all_stage_data is not None:
            self.all_stage_data = dict(all_stage_data)
        self._publish()

        generation = self._generation
        history = await self.sessions.activate(key)
        if generation != self._generation:
            return

        self._state.conversation_id = self.sessions.conversation_id
        for message in history:
            self._state.append_message(message)
        self._publish()
        self._log_session(event_type)

    # ------------------------------------------------------------------
    # send_message machinery
    # ------------------------------------------------------------------

    async def _supersede(self) -> int:
        """
        Invalidate the running send_message and wait for its task to exit.

        Returns:
            The new generation number
        """
        self._generation += 1
        generation = self._generation
        previous, self._task = self._task, None
        if previous is not None and not previous.done():
            previous.cancel()
            await asyncio.wait({previous})
        return generation

    async def _send(self, user_text: str, append_user: bool) -> None:
        generation = await self._supersede()
        if generation != self._generation:
            return
        if self.sessions.key is None:
            raise RuntimeError("Engine not started; call start() first")

        task = asyncio.create_task(self._run(generation, user_text, append_user))
        self._task = task
        try:
            await task
        except asyncio.CancelledError:
            if generation != self._generation:
                logger.debug(f"send_message superseded (generation {generation})")
                return
            # The caller itself was cancelled
            self._state.is_loading = False
            self._publish()
            raise

    def _check(self, generation: int) -> None:
        if generation != self._generation:
            raise CancelledByNewRequest(f"Request generation {generation} superseded")

    async def _run(self, generation: int, user_text: str, append_user: bool) -> None:
        try:
            await self._exchange(generation, user_text, append_user)
        except CancelledByNewRequest:
            logger.debug(f"Discarding superseded request (generation {generation})")
        except Exception as e:
            if not isinstance(e, ChargurError):
                logger.exception(f"Unexpected error in send_message: {e}")
            if generation == self._generation:
                self._state.error = GENERIC_FAILURE_MESSAGE
                self._state.is_loading = False
                self._publish()
            raise

    async def _exchange(self, generation: int, user_text: str, append_user: bool) -> None:
        credentials = await resolve_credentials(self.config.credential_provider)
        self._check(generation)
        if credentials is None:
            self._state.error = SIGN_IN_MESSAGE
            self._state.is_loading = False
            self._publish()
            self._log_session("error", error=SIGN_IN_MESSAGE, error_type="AuthenticationRequired")
            return

        # Order matters: history append, then state reset, then network
        prior_history = self._state.history_items()
        if append_user:
            self._state.append_message(ChatMessage(role=MessageRole.USER, content=user_text))
        elif prior_history and prior_history[-1]["role"] == MessageRole.USER.value:
            prior_history = prior_history[:-1]
        self._last_user_text = user_text
        self._state.reset_transient()
        self._state.is_loading = True
        self._publish()
        self._log_session("request", user_request=user_text)

        ex = _Exchange(generation=generation, user_text=user_text, history=prior_history)
        retry = self.retry
        retry.reset()

        while True:
            attempt = retry.begin_attempt()
            resume_from: int | None = None

            if attempt > 1 and ex.conversation_id is not None:
                recovered = await self._try_recover(ex)
                self._check(generation)
                if recovered.success:
                    await self._apply_recovered(ex, recovered, attempt)
                    retry.record_success()
                    return
                base_index = self._base_index(ex)
                if base_index is not None and recovered.last_token_index > base_index:
                    # Partial content of this exchange; ask the service to resume after it
                    if recovered.content:
                        self._state.content = recovered.content
                        self._publish()
                    resume_from = recovered.last_token_index
                    if ex.checkpoints is not None:
                        ex.checkpoints.skip_to(recovered.last_token_index)

            entry = self._new_entry(ex, attempt, resume_from)
            started = time.monotonic()
            try:
                await self._attempt(ex, entry, resume_from)
            except (asyncio.CancelledError, CancelledByNewRequest):
                entry.outcome = "cancelled"
                self._log_attempt(entry, started)
                raise
            except ChargurError as e:
                entry.error = str(e)[:500]
                entry.error_type = type(e).__name__
                decision = retry.record_failure(e)
                entry.outcome = "retry" if decision.retry else "failed"
                self._log_attempt(entry, started)
                self._check(generation)

                if not decision.retry:
                    await self._fail(ex, e)
                    return

                await retry.wait(decision.delay)
                self._check(generation)
                continue

            entry.outcome = "success"
            self._log_attempt(entry, started)
            retry.record_success()
            return

    async def _attempt(self, ex: _Exchange, entry: StreamLogEntry, resume_from: int | None) -> None:
        """
        One network attempt: open the stream and apply events until complete.

        Raises:
            AuthenticationRequired: Credentials missing or refused
            TransportFailure: Stream could not be opened, broke, or ended early
            RemoteError: The stream carried an error event
            StoreError: The conversation could not be created
        """
        credentials = await resolve_credentials(self.config.credential_provider)
        self._check(ex.generation)
        if credentials is None:
            raise AuthenticationRequired(SIGN_IN_MESSAGE)

        await self._ensure_conversation(ex)
        entry.conversation_id = ex.conversation_id or ""

        parser = FrameParser()
        chunks = self.transport.stream(self._build_request(ex, resume_from), credentials)
        start = time.monotonic()
        completed = False
        try:
            async with aclosing(chunks), aclosing(iter_events(chunks, parser)) as events:
                async for event in events:
                    if not entry.first_byte_ms:
                        entry.first_byte_ms = int((time.monotonic() - start) * 1000)
                    if event.type == EventType.CONTENT:
                        entry.content_events += 1
                    if await self._apply_event(ex, event):
                        completed = True
                        break
        except CancelledByNewRequest:
            raise
        except ChargurError:
            if ex.checkpoints is not None:
                await ex.checkpoints.flush()
            raise
        finally:
            entry.heartbeats = parser.stats.heartbeats
            entry.malformed_frames = parser.stats.malformed
            entry.unknown_events = parser.stats.unknown
            entry.completed = completed
            entry.final_content_chars = len(self._state.content)

        if not completed:
            if ex.checkpoints is not None:
                await ex.checkpoints.flush()
            raise TransportFailure("Stream ended before the response was complete")

    async def _ensure_conversation(self, ex: _Exchange) -> None:
        if ex.conversation_id is not None:
            return
        conversation_id = await self.sessions.ensure_session({"source": "chargur"})
        self._check(ex.generation)
        ex.conversation_id = conversation_id
        if self._state.conversation_id != conversation_id:
            self._state.conversation_id = conversation_id
            self._publish()

        if self.config.persist_checkpoints:
            ex.checkpoints = await CheckpointWriter.open(
                self.store, conversation_id, self.config.checkpoint_batch_size
            )
            self._check(ex.generation)
        else:
            ex.checkpoints = CheckpointWriter.disabled(self.store, conversation_id)

    def _build_request(self, ex: _Exchange, resume_from: int | None) -> AgentRequest:
        return AgentRequest(
            stage_id=self.sessions.key.stage_id if self.sessions.key else "",
            user_message=ex.user_text,
            conversation_id=ex.conversation_id or "",
            current_stage_data=self.current_stage_data,
            all_stage_data=self.all_stage_data,
            conversation_history=ex.history,
            memory=self.memory,
            recommendations=self.recommendations,
            last_token_index=resume_from,
        )

    async def _apply_event(self, ex: _Exchange, event: StreamEvent) -> bool:
        """
        Apply one event to state.

        Returns:
            True once the complete event has been applied
        """
        self._check(ex.generation)

        if event.type == EventType.CONTENT:
            self._state.content = event.content
            self._publish()
            if ex.checkpoints is not None and ex.checkpoints.add(event.content):
                await ex.checkpoints.flush()
            return False

        if event.type == EventType.COMPLETE:
            if ex.checkpoints is not None:
                await ex.checkpoints.flush()
            self._check(ex.generation)
            await self._finish(
                ex,
                content=event.content or self._state.content,
                suggestions=event.suggestions,
                auto_fill_data=event.auto_fill_data,
                stage_complete=event.stage_complete,
                next_stage_id=event.next_stage_id,
                context=event.context,
            )
            return True

        if event.type == EventType.ERROR:
            raise RemoteError(event.error_message, {"conversation_id": ex.conversation_id})

        # Heartbeat
        return False

    async def _finish(
        self,
        ex: _Exchange,
        content: str,
        suggestions: list[str],
        auto_fill_data: dict[str, Any],
        stage_complete: bool,
        next_stage_id: str | None,
        context: dict[str, Any] | None = None,
        persist: bool = True,
    ) -> None:
        """Apply a terminal response to state and notify listeners."""
        if persist and self.config.save_responses and ex.conversation_id:
            await self._best_effort(
                "save_complete_response",
                self.store.save_complete_response(
                    CompleteResponse(
                        conversation_id=ex.conversation_id,
                        full_content=content,
                        suggestions=list(suggestions),
                        auto_fill_data=dict(auto_fill_data),
                        stage_complete=stage_complete,
                        next_stage_id=next_stage_id,
                        context=dict(context or {}),
                        user_prompt=ex.user_text,
                    )
                ),
            )
        if ex.conversation_id in self._marked_failed:
            self._marked_failed.discard(ex.conversation_id)
            await self._best_effort(
                "update_conversation_status",
                self.store.update_conversation_status(ex.conversation_id, ConversationStatus.ACTIVE),
            )
        self._check(ex.generation)

        self._state.content = content
        self._state.suggestions = list(suggestions)
        self._state.auto_fill_data = dict(auto_fill_data)
        self._state.is_complete = True
        self._state.is_loading = False
        self._state.append_message(
            ChatMessage(
                role=MessageRole.ASSISTANT,
                content=content,
                suggestions=tuple(suggestions),
                auto_fill_data=dict(auto_fill_data),
                is_complete=True,
            )
        )
        self._publish()
        self._emit_lifecycle(ex, auto_fill_data, stage_complete, next_stage_id)

    def _emit_lifecycle(
        self,
        ex: _Exchange,
        auto_fill_data: dict[str, Any],
        stage_complete: bool,
        next_stage_id: str | None,
    ) -> None:
        stage_id = self.sessions.key.stage_id if self.sessions.key else ""

        if auto_fill_data and not ex.auto_fill_sent:
            update = AutoFillUpdate.from_payload(auto_fill_data, stage_id)
            if update is not None:
                ex.auto_fill_sent = True
                self.events.emit(EngineEventType.AUTO_FILL, update)

        if stage_complete and not ex.stage_complete_sent:
            ex.stage_complete_sent = True
            self.events.emit(EngineEventType.STAGE_COMPLETE, stage_id)

        if next_stage_id and not ex.navigate_sent:
            ex.navigate_sent = True
            self.events.emit(EngineEventType.NAVIGATE, next_stage_id)

    async def _try_recover(self, ex: _Exchange) -> RecoveryResult:
        base_index = self._base_index(ex)
        return await self.recovery.recover(
            ex.conversation_id or "",
            user_prompt=ex.user_text,
            after_index=base_index if base_index is not None else -1,
            since=ex.started_at - CLOCK_SKEW,
        )

    def _base_index(self, ex: _Exchange) -> int | None:
        """Last token index before this exchange, or None if unknown."""
        if ex.checkpoints is None:
            return None
        return ex.checkpoints.base_index

    async def _apply_recovered(self, ex: _Exchange, recovered: RecoveryResult, attempt: int) -> None:
        logger.info(f"Attempt {attempt} served from stored response for {ex.conversation_id}")
        entry = self._new_entry(ex, attempt, None)
        entry.outcome = "recovered"
        entry.completed = True
        entry.final_content_chars = len(recovered.content)
        self._log_attempt(entry, time.monotonic())
        self._log_session("recovered")

        await self._finish(
            ex,
            content=recovered.content,
            suggestions=recovered.suggestions,
            auto_fill_data=recovered.auto_fill_data,
            stage_complete=recovered.stage_complete,
            next_stage_id=recovered.next_stage_id,
            persist=False,
        )

    async def _fail(self, ex: _Exchange, error: ChargurError) -> None:
        """Terminal failure: surface one user-facing message."""
        if ex.checkpoints is not None:
            await ex.checkpoints.flush()
        if ex.conversation_id is not None:
            ok = await self._best_effort(
                "update_conversation_status",
                self.store.update_conversation_status(ex.conversation_id, ConversationStatus.FAILED),
            )
            if ok:
                self._marked_failed.add(ex.conversation_id)
        self._check(ex.generation)

        message = error.message if is_auth_failure(error) else GENERIC_FAILURE_MESSAGE
        self._state.error = message
        self._state.is_loading = False
        self._publish()
        self._log_session("error", error=str(error)[:500], error_type=type(error).__name__)

    async def _best_effort(self, operation: str, coro) -> bool:
        """Await a store call whose failure must not affect the exchange."""
        try:
            await coro
        except StoreError as e:
            logger.warning(f"{operation} failed: {e}")
            return False
        return True

    # ------------------------------------------------------------------
    # State publication and logging
    # ------------------------------------------------------------------

    def _publish(self) -> None:
        self.events.emit(EngineEventType.STATE, self._state.snapshot())

    def _new_entry(self, ex: _Exchange, attempt: int, resume_from: int | None) -> StreamLogEntry:
        return StreamLogEntry(
            timestamp=now_iso(),
            request_id=ex.request_id,
            session_id=get_session_id(),
            conversation_id=ex.conversation_id or "",
            stage_id=self.sessions.key.stage_id if self.sessions.key else "",
            attempt=attempt,
            resumed_from_index=resume_from if resume_from is not None else -1,
            user_message=ex.user_text[:500],
        )

    def _log_attempt(self, entry: StreamLogEntry, started: float) -> None:
        entry.latency_ms = int((time.monotonic() - started) * 1000)
        if entry.outcome in ("success", "recovered", "cancelled"):
            stream_logger.info(entry.to_json())
        else:
            stream_logger.error(entry.to_json())

    def _log_session(
        self,
        event_type: str,
        user_request: str = "",
        error: str | None = None,
        error_type: str | None = None,
    ) -> None:
        key = self.sessions.key
        entry = SessionLogEntry(
            timestamp=now_iso(),
            session_id=self._session_id,
            event_type=event_type,
            project_id=key.project_id if key else "",
            stage_id=key.stage_id if key else "",
            conversation_id=self._state.conversation_id or "",
            user_request=user_request[:500],
            history_messages=len(self._state.history),
            error=error,
            error_type=error_type,
        )
        if error:
            session_logger.error(entry.to_json())
        else:
            session_logger.info(entry.to_json())

